"""Command-line interface: run the server and inspect templates."""

from __future__ import annotations

import argparse
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from aifactory.config import Settings, load_settings
from aifactory.errors import OrchestratorError
from aifactory.models import ExecutionPlan
from aifactory.templates import Template, TemplateRegistry, TemplateResolver

console = Console()


def print_templates(templates: list[Template]):
    if not templates:
        console.print("[yellow]No templates found.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Category", style="green")
    table.add_column("Stages", justify="right")
    table.add_column("Description", style="dim")
    for t in templates:
        table.add_row(t.name, t.category, str(len(t.stages)), t.description)
    console.print(table)


def print_plan(plan: ExecutionPlan):
    console.print(f"\n[bold cyan]Execution Plan: {plan.template_name}[/bold cyan]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Tier", justify="right", style="cyan")
    table.add_column("Order", justify="right")
    table.add_column("Worker", style="green")
    table.add_column("Action", style="yellow")
    table.add_column("Parallel", justify="center")
    table.add_column("Est. cost", justify="right")
    table.add_column("Est. time", justify="right")
    for planned in plan.stages:
        stage = planned.stage
        table.add_row(
            str(planned.tier),
            str(stage.stage_order),
            stage.worker_name,
            stage.action,
            "yes" if stage.can_parallel else "",
            f"${stage.estimated_cost_usd:.4f}",
            f"{stage.estimated_time_ms} ms",
        )
    console.print(table)

    if plan.dependencies:
        console.print("\n[bold cyan]Dependencies:[/bold cyan]")
        for dep in plan.dependencies:
            console.print(f"  {dep.stage_from} -> {dep.stage_to} [dim]({dep.dependency_type})[/dim]")

    console.print(Panel(
        f"Tiers: {plan.tier_count}\n"
        f"Parallel groups: {len(plan.parallel_groups)}\n"
        f"Estimated cost: ${plan.estimated_total_cost_usd:.4f}\n"
        f"Estimated time: {plan.estimated_total_time_ms} ms",
        title="[bold]Estimates[/bold]",
        border_style="blue",
    ))


def _registry(settings: Settings) -> TemplateRegistry:
    return TemplateRegistry(settings.templates_dir)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from aifactory.server import create_app

    host = args.host or settings.host
    port = args.port or settings.port
    console.print(f"[bold magenta]AI factory orchestrator[/bold magenta] on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, log_level="info")
    return 0


def cmd_templates(args: argparse.Namespace, settings: Settings) -> int:
    print_templates(_registry(settings).list())
    return 0


def cmd_plan(args: argparse.Namespace, settings: Settings) -> int:
    resolver = TemplateResolver(_registry(settings))
    try:
        plan = resolver.resolve(args.name)
    except OrchestratorError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        return 1
    print_plan(plan)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aifactory", description="AI factory orchestrator")
    parser.add_argument("--config", help="Path to config.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    templates = sub.add_parser("templates", help="List available templates")
    templates.set_defaults(func=cmd_templates)

    plan = sub.add_parser("plan", help="Show the execution plan for a template")
    plan.add_argument("name")
    plan.set_defaults(func=cmd_plan)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
