"""
schemaform CLI.

Offline tools for schema authors:

- check:        normalize a schema and report rule links, cycles and problems
- permissions:  show the field permission table for a role
- eval:         evaluate one expression tree against a JSON context
- deps:         list the fields an expression tree reads
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from schemaform._version import get_version
from schemaform.core.errors import ExpressionEvaluationError, FormEngineError
from schemaform.core.expression_lang.dependencies import dependencies
from schemaform.core.expression_lang.evaluator import evaluate
from schemaform.core.ir.expressions import parse_expression_tree
from schemaform.core.rules.classifier import classify_rules, create_field_rule_mapping
from schemaform.core.rules.graph import validate_schema
from schemaform.core.rules.normalizer import normalize
from schemaform.core.rules.permissions import calculate_field_permissions

app = typer.Typer(
    help="Inspect schemaform schemas and expression trees",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"schemaform {get_version()}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version"),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """schemaform command line tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {path}: {e}[/red]")
        raise typer.Exit(1) from e


def _load_schema(path: Path) -> Any:
    try:
        return normalize(_load_json(path))
    except FormEngineError as e:
        console.print(f"[red]Invalid schema:[/red] {e.message}")
        raise typer.Exit(1) from e


# =============================================================================
# Commands
# =============================================================================


@app.command()
def check(
    schema_path: Annotated[Path, typer.Argument(help="Schema JSON file")],
    output_json: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Normalize a schema and report rule links, cycles and problems."""
    schema = _load_schema(schema_path)
    report = validate_schema(schema)
    mapping = create_field_rule_mapping(schema, classify_rules(schema))

    if output_json:
        console.print_json(
            json.dumps(
                {
                    "schema": schema.id,
                    "valid": report.is_valid,
                    "errors": report.errors,
                    "warnings": report.warnings,
                    "required_fields": schema.required_field_ids,
                    "computed_fields": schema.computed_field_ids,
                    "field_rules": {
                        field_id: {
                            "validation": rules.validation,
                            "computation": rules.computation,
                            "business_logic": rules.business_logic,
                        }
                        for field_id, rules in mapping.items()
                    },
                }
            )
        )
    else:
        table = Table(title=f"Schema {schema.id}")
        table.add_column("Field")
        table.add_column("Type", style="dim")
        table.add_column("Flags")
        table.add_column("Validation")
        table.add_column("Computation")
        for field_id, field_def in schema.fields.items():
            flags = [flag for flag, on in (("required", field_def.required), ("computed", field_def.is_computed)) if on]
            table.add_row(
                field_id,
                str(field_def.type),
                ", ".join(flags),
                ", ".join(mapping[field_id].validation),
                ", ".join(mapping[field_id].computation),
            )
        console.print(table)

        for warning in report.warnings:
            console.print(f"[yellow]warning:[/yellow] {warning}")
        for error in report.errors:
            console.print(f"[red]error:[/red] {error}")
        if report.is_valid:
            console.print("[green]Schema OK[/green]")

    if not report.is_valid:
        raise typer.Exit(1)


@app.command()
def permissions(
    schema_path: Annotated[Path, typer.Argument(help="Schema JSON file")],
    role: Annotated[str | None, typer.Option("--role", "-r", help="Role to evaluate")] = None,
) -> None:
    """Show editable / readable / hidden flags per field for a role."""
    schema = _load_schema(schema_path)
    field_permissions = calculate_field_permissions(schema, role)

    table = Table(title=f"Permissions for {role or 'no role'}")
    table.add_column("Field")
    table.add_column("Editable")
    table.add_column("Readable")
    table.add_column("Hidden")

    def _yes_no(value: bool) -> str:
        return "[green]yes[/green]" if value else "[red]no[/red]"

    for field_id, permission in field_permissions.items():
        table.add_row(
            field_id,
            _yes_no(permission.editable),
            _yes_no(permission.readable),
            "[dim]yes[/dim]" if permission.hidden else "no",
        )
    console.print(table)


@app.command(name="eval")
def eval_expression(
    tree_path: Annotated[Path, typer.Argument(help="Expression tree JSON file")],
    context: Annotated[str, typer.Option("--context", "-c", help="JSON object of field values")] = "{}",
) -> None:
    """Evaluate an expression tree against a context."""
    try:
        values = json.loads(context)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --context JSON: {e}[/red]")
        raise typer.Exit(1) from e

    try:
        tree = parse_expression_tree(_load_json(tree_path))
        result = evaluate(tree, values)
    except ExpressionEvaluationError as e:
        console.print(f"[red]Evaluation failed:[/red] {e.message}")
        raise typer.Exit(1) from e
    except FormEngineError as e:
        console.print(f"[red]Invalid expression:[/red] {e.message}")
        raise typer.Exit(1) from e

    console.print(json.dumps(result, default=str))


@app.command()
def deps(
    tree_path: Annotated[Path, typer.Argument(help="Expression tree JSON file")],
) -> None:
    """List the fields an expression tree reads."""
    try:
        tree = parse_expression_tree(_load_json(tree_path))
    except FormEngineError as e:
        console.print(f"[red]Invalid expression:[/red] {e.message}")
        raise typer.Exit(1) from e

    console.print(f"[dim]{tree}[/dim]")
    for name in sorted(dependencies(tree)):
        console.print(name)


def main(argv: list[str] | None = None) -> None:
    app(args=argv)


if __name__ == "__main__":
    main()
