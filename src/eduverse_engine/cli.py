"""Typer CLI for Eduverse-Engine."""

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="eduverse", help="Eduverse-Engine: course licenses, progress and certificates")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Eduverse-Engine API server."""
    import uvicorn
    from eduverse_engine.app import create_app

    console.print(f"[bold green]Starting Eduverse-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def price(
    resource: str = typer.Argument(..., help="Course id"),
    months: int = typer.Option(1, "--months", "-m", help="License duration in months"),
):
    """Show the license price breakdown for a course (offline)."""
    from eduverse_engine.common.config import get_settings
    from eduverse_engine.common.exceptions import InvalidDurationError
    from eduverse_engine.licensing.pricing import calculate_license_price

    settings = get_settings()
    try:
        quote = calculate_license_price(
            resource,
            settings.price_per_unit(resource),
            months,
            fee_bps=settings.platform_fee_bps,
            min_units=settings.min_duration_units,
            max_units=settings.max_duration_units,
        )
    except InvalidDurationError as e:
        console.print(f"[bold red]{e.code}[/bold red] - {e.message}")
        raise typer.Exit(1)

    table = Table(title=f"{resource} for {months} month(s)")
    table.add_column("Item")
    table.add_column("Wei", justify="right")
    table.add_row("Price per month", str(quote.price_per_unit))
    table.add_row("Platform fee", str(quote.platform_fee))
    table.add_row("Creator revenue", str(quote.creator_revenue))
    table.add_row("[bold]Total[/bold]", f"[bold]{quote.total_price}[/bold]")
    console.print(table)
    console.print(f"Total: {quote.total_eth} ETH")


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Eduverse-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] - v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
