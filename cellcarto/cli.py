"""Cellcarto Command Line Interface."""

import asyncio
from pathlib import Path

import typer

app = typer.Typer(
    name="cellcarto",
    help="Cellcarto - Lazy exploration of single-cell zarr stores",
    add_completion=False,
)


def _load_config(config_path: str | None):
    from cellcarto.config import CartoConfig

    if config_path is None:
        return CartoConfig()
    try:
        return CartoConfig.from_json(config_path)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"❌ Invalid config: {e}")
        raise typer.Exit(1) from e


def _check_store(store_path: str) -> None:
    if "://" not in store_path and not Path(store_path).exists():
        typer.echo(f"❌ Store not found: {store_path}")
        raise typer.Exit(1) from None


@app.command()
def version():
    """Show cellcarto version."""
    import cellcarto

    typer.echo(f"cellcarto version: {getattr(cellcarto, '__version__', 'unknown')}")


@app.command()
def info(
    store_path: str = typer.Argument(..., help="Path or URL of a zarr store"),
    config: str | None = typer.Option(
        None, "--config", "-c", help="JSON session configuration"
    ),
):
    """Show information about a zarr store."""
    from cellcarto import CartoSession

    _check_store(store_path)
    session_config = _load_config(config)

    async def _run():
        async with await CartoSession.open(store_path, session_config) as session:
            session.info()

    try:
        asyncio.run(_run())
    except Exception as e:
        typer.echo(f"❌ Failed to open store: {e}")
        raise typer.Exit(1) from e


@app.command()
def column(
    store_path: str = typer.Argument(..., help="Path or URL of a zarr store"),
    name: str = typer.Argument(..., help="Row attribute to load"),
):
    """Load one row attribute and summarise its values."""
    from cellcarto import CartoSession

    _check_store(store_path)

    async def _run():
        async with await CartoSession.open(store_path) as session:
            if name not in session.descriptors:
                typer.echo(f"❌ Unknown column: {name}")
                raise typer.Exit(1)

            await session.ensure_loaded(name)
            if session.descriptors[name].is_numeric:
                value_range = session.loader.numeric_ranges[name]
                typer.echo(f"{name} (continuous)")
                typer.echo(f"  Range: [{value_range.min:.4g}, {value_range.max:.4g}]")
            else:
                values = sorted(session.loader.categorical_values[name])
                typer.echo(f"{name} (categorical)")
                typer.echo(f"  Distinct values: {len(values)}")
                for value in values[:20]:
                    typer.echo(f"    {value}")
            for event in session.events.for_target(name):
                typer.echo(f"  ⚠️  Degraded load: {event.reason}")

    try:
        asyncio.run(_run())
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"❌ Failed to load column: {e}")
        raise typer.Exit(1) from e


@app.command()
def genes(
    store_path: str = typer.Argument(..., help="Path or URL of a zarr store"),
    query: str = typer.Argument(..., help="Gene name or fragment"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum matches"),
):
    """Search gene names (prefix matches first)."""
    from cellcarto import CartoSession

    _check_store(store_path)

    async def _run():
        async with await CartoSession.open(store_path) as session:
            return session.suggest_genes(query, limit=limit)

    try:
        matches = asyncio.run(_run())
    except Exception as e:
        typer.echo(f"❌ Failed to open store: {e}")
        raise typer.Exit(1) from e

    if not matches:
        typer.echo(f"No genes matching '{query}'")
        return
    for gene in matches:
        typer.echo(gene)


if __name__ == "__main__":
    app()
