"""
Expression language for schema rules.

Evaluator, function library, dependency analyzer and memoizing cache for
the expression trees carried by schema rules.

Usage:
    from schemaform.core.expression_lang import evaluate
    from schemaform.core.ir import parse_expression_tree

    tree = parse_expression_tree(
        {"Type": "CallExpression", "Callee": "CONCAT",
         "Arguments": [{"Type": "Identifier", "Name": "FirstName"},
                       {"Type": "Literal", "Value": " "},
                       {"Type": "Identifier", "Name": "LastName"}]}
    )
    evaluate(tree, {"FirstName": "Jane", "LastName": "Doe"})
    # 'Jane Doe'
"""

from schemaform.core.expression_lang.cache import EvaluationCache
from schemaform.core.expression_lang.dependencies import dependencies
from schemaform.core.expression_lang.evaluator import evaluate, system_values

__all__ = ["EvaluationCache", "dependencies", "evaluate", "system_values"]
