"""LLM Supervisor CLI."""

import asyncio
import json

import typer
from rich.console import Console
from rich.table import Table

from llm_supervisor import __version__
from llm_supervisor.config import Settings, get_settings
from llm_supervisor.errors import SupervisorError
from llm_supervisor.logging_config import intercept_standard_logging, setup_logging
from llm_supervisor.models import MODELS, CompletionOptions, get_model_config
from llm_supervisor.services.llama_service import LlamaService
from llm_supervisor.services.path_resolver import PathResolver
from llm_supervisor.services.registry import SupervisorRegistry
from llm_supervisor.services.resource_estimator import (
    gpu_layers,
    memory_ceiling,
    model_load_timeout,
)
from llm_supervisor.utils.system_info import (
    check_model_compatibility,
    get_system_capabilities,
    get_system_info_string,
)

app = typer.Typer(
    name="llm-supervisor",
    help="LLM Supervisor - Run a local llama.cpp server on demand",
    no_args_is_help=True,
)
console = Console()
registry = SupervisorRegistry()


@app.callback()
def _configure() -> None:
    setup_logging()
    intercept_standard_logging()


def _settings(model_key: str | None) -> Settings:
    settings = get_settings()
    if model_key:
        if model_key not in MODELS:
            console.print(f"[red]Unknown model: {model_key}[/red]")
            raise typer.Exit(1)
        settings = settings.model_copy(update={"model_key": model_key})
    return settings


@app.command()
def status(
    model_key: str = typer.Option(None, "--model", "-m", help="Model key from `models`"),
):
    """Show resolved paths and resource estimates for the configured model."""
    settings = _settings(model_key)
    model = get_model_config(settings.model_key)
    paths = PathResolver(settings, model)
    binary = paths.find_binary()
    model_path = paths.find_model()

    table = Table(title=f"llama-server: {model.name}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Provider", settings.llm_provider)
    table.add_row("Binary", str(binary) if binary else "[red]not found[/red]")
    table.add_row("Model file", str(model_path) if model_path else "[red]not found[/red]")
    table.add_row("Server URL", settings.server_url)
    table.add_row("GPU layers", str(gpu_layers(model.size_mb)))
    table.add_row("Load timeout", f"{model_load_timeout(model.size_mb):.0f}s")
    table.add_row("Memory ceiling", f"{memory_ceiling(model.size_mb):.0f} MB")
    idle = settings.effective_idle_timeout
    table.add_row("Idle unload", f"{idle:.0f}s" if idle > 0 else "disabled")
    console.print(table)
    console.print(get_system_info_string())

    report = check_model_compatibility(model)
    if report.get("warning"):
        color = "yellow" if report["is_compatible"] else "red"
        console.print(f"[{color}]{report['warning']}[/{color}]")
        if report.get("recommendation"):
            console.print(report["recommendation"])


@app.command()
def models():
    """List known models and whether they fit this machine."""
    settings = get_settings()
    capabilities = get_system_capabilities()

    table = Table(title="Available Models")
    table.add_column("Key", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Size", style="yellow")
    table.add_column("RAM", style="blue")
    table.add_column("Fits", style="green")
    table.add_column("Downloaded", style="green")

    for model in MODELS.values():
        report = check_model_compatibility(model, capabilities)
        if not report["is_compatible"]:
            fits = "[red]no[/red]"
        elif report.get("warning"):
            fits = "[yellow]tight[/yellow]"
        else:
            fits = "yes"
        downloaded = (settings.models_dir / model.file_name).is_file()
        table.add_row(
            model.key,
            model.name,
            f"{model.size_mb / 1024:.1f} GB",
            model.ram_requirement,
            fits,
            "yes" if downloaded else "-",
        )
    console.print(table)


@app.command()
def start(
    model_key: str = typer.Option(None, "--model", "-m", help="Model key from `models`"),
):
    """Start llama-server and keep it running until interrupted."""
    settings = _settings(model_key)
    try:
        asyncio.run(_run_server(settings))
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


async def _run_server(settings: Settings) -> None:
    service = registry.create(settings)
    try:
        if not await service.ensure_ready():
            console.print(f"[red]Provider '{settings.llm_provider}' is not llama[/red]")
            raise typer.Exit(1)
        console.print(f"[green]{service.model.name} ready at {settings.server_url}[/green]")
        console.print("Press Ctrl+C to stop")
        while service.supervisor.has_process:
            await asyncio.sleep(1.0)
        console.print(f"[red]llama-server exited: {service.supervisor.last_error}[/red]")
        raise typer.Exit(1)
    except SupervisorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await registry.shutdown()


@app.command()
def classify(
    text: str = typer.Argument(..., help="Text to classify"),
    model_key: str = typer.Option(None, "--model", "-m", help="Model key from `models`"),
    json_output: bool = typer.Option(False, "--json", help="Machine-readable JSON output"),
):
    """Suggest a category and tags for TEXT."""
    settings = _settings(model_key)
    result = asyncio.run(_classify(settings, text))

    if json_output:
        print(
            json.dumps(
                {"category": result.category, "tags": result.tags, "confidence": result.confidence}
            )
        )
        return
    if not result.category and not result.tags:
        console.print("[yellow]Could not classify text[/yellow]")
        return
    console.print(f"[bold]Category:[/bold] [cyan]{result.category or '-'}[/cyan]")
    console.print(f"[bold]Tags:[/bold] {', '.join(result.tags) or '-'}")


async def _classify(settings: Settings, text: str):
    service = registry.create(settings)
    try:
        return await service.classify(text)
    except SupervisorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await registry.shutdown()


@app.command()
def complete(
    prompt: str = typer.Argument(..., help="Prompt to complete"),
    model_key: str = typer.Option(None, "--model", "-m", help="Model key from `models`"),
    tokens: int = typer.Option(256, "--tokens", "-n", help="Tokens to generate"),
    temperature: float = typer.Option(0.7, "--temperature", "-t", help="Sampling temperature"),
):
    """Generate a completion for PROMPT."""
    settings = _settings(model_key)
    options = CompletionOptions(temperature=temperature, predicted_tokens=tokens, stop=[])
    content = asyncio.run(_complete(settings, prompt, options))
    console.print(content)


async def _complete(settings: Settings, prompt: str, options: CompletionOptions) -> str:
    service = registry.create(settings)
    try:
        return await service.complete(prompt, options)
    except SupervisorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e
    finally:
        await registry.shutdown()


@app.command()
def download(
    model_key: str = typer.Argument(None, help="Model key from `models` (default: configured)"),
):
    """Download a model into the models directory."""
    settings = _settings(model_key)
    if not asyncio.run(_download(settings)):
        raise typer.Exit(1)


async def _download(settings: Settings) -> bool:
    service = LlamaService(settings)
    model = service.model
    console.print(f"[bold]Downloading [cyan]{model.name}[/cyan][/bold]")

    last_progress = -1
    final_status = "failed"
    async for update in service.download_model(model):
        final_status = update["status"]
        progress = update.get("progress", 0)
        if final_status == "downloading" and progress != last_progress and progress % 10 == 0:
            last_progress = progress
            console.print(f"  {progress}%")
        elif final_status == "completed":
            console.print(f"[green]Saved to {update.get('local_path')}[/green]")
        elif final_status == "cancelled":
            console.print("[yellow]Download cancelled[/yellow]")
        elif final_status == "failed":
            console.print(f"[red]Download failed: {update.get('error')}[/red]")
    return final_status == "completed"


@app.command()
def version():
    """Show version information."""
    console.print(f"LLM Supervisor v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
