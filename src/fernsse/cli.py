"""Command-line interface."""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

app = typer.Typer(help="fernsse: trait-dependent diversification with MuSSE")
console = Console()

logger = logging.getLogger("fernsse")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _read_traces(traces: List[Path]):
    from fernsse.core.mcmc import read_trace

    return [read_trace(path) for path in traces]


def _parse_comparisons(compare: Optional[List[str]]):
    from fernsse.core.summary import parse_comparison

    return [parse_comparison(c) for c in compare or []]


def _print_summary(summary) -> None:
    table = Table(title=f"Posterior ({summary.n_samples} samples, {summary.n_chains} chains)")
    table.add_column("Parameter", style="cyan")
    for column in ("Mean", "Median", "2.5%", "97.5%", "HPD low", "HPD high"):
        table.add_column(column, justify="right")
    for row in summary.table.itertuples(index=False):
        table.add_row(
            row.parameter,
            *(f"{v:.4g}" for v in (row.mean, row.median, row.lower, row.upper,
                                   row.hpd_lower, row.hpd_upper)),
        )
    console.print(table)

    if summary.comparisons:
        comparisons = Table(title="Posterior probabilities")
        comparisons.add_column("Comparison", style="cyan")
        comparisons.add_column("P", justify="right", style="green")
        for name, prob in summary.comparisons.items():
            comparisons.add_row(name, f"{prob:.3f}")
        console.print(comparisons)


def _print_diagnostics(report) -> None:
    table = Table(title="Convergence")
    table.add_column("Parameter", style="cyan")
    table.add_column("ESS", justify="right")
    table.add_column("R-hat", justify="right")
    for name in report.ess:
        rhat = report.rhat[name]
        ok = report.ess[name] >= report.min_ess and not rhat > report.max_rhat
        style = "green" if ok else "red"
        table.add_row(name, f"[{style}]{report.ess[name]:.1f}[/{style}]", f"[{style}]{rhat:.3f}[/{style}]")
    console.print(table)
    if report.converged:
        console.print("[green]All convergence checks passed[/green]")
    else:
        for issue in report.issues:
            console.print(f"[yellow]{issue}[/yellow]")


def _print_model_comparison(comparison) -> None:
    if comparison is None:
        return
    alternative = comparison["alternative"]
    console.print(
        f"[bold]Alternative constraints[/bold] log-likelihood "
        f"{alternative['log_likelihood']:.4f} ({alternative['n_parameters']} parameters)"
    )
    lrt = comparison["lrt"]
    if lrt is not None:
        console.print(f"LRT statistic {lrt['statistic']:.3f}, df {lrt['df']}, p = {lrt['pvalue']:.4g}")
    console.print(f"{comparison['criterion']} prefers the {comparison['preferred']} model")


@app.command()
def version():
    """Show fernsse version."""
    from fernsse import __version__
    console.print(f"fernsse version {__version__}")


@app.command()
def run(
    config: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON analysis config"),
    production_steps: Optional[int] = typer.Option(None, help="Steps per production chain"),
    chains: Optional[int] = typer.Option(None, help="Number of production chains"),
    seed: Optional[int] = typer.Option(None, help="Master seed for chain seeds"),
    output_dir: Optional[Path] = typer.Option(None, help="Output directory"),
    resume: bool = typer.Option(False, help="Continue existing chain traces"),
    log_level: str = typer.Option("INFO", help="Logging level"),
):
    """Run the full analysis described by CONFIG."""
    from fernsse.config import AnalysisConfig
    from fernsse.core.data import DataMismatchError
    from fernsse.core.mcmc import SamplerError, draw_seeds
    from fernsse.recipes import run_analysis

    _configure_logging(log_level)
    try:
        cfg = AnalysisConfig.from_json(config)
        changes = {}
        if production_steps is not None:
            changes["production_steps"] = production_steps
        if chains is not None:
            changes["chain_count"] = chains
            if len(cfg.random_seeds) != chains:
                changes["random_seeds"] = []
        if seed is not None:
            n = changes.get("chain_count", cfg.chain_count)
            changes["random_seeds"] = draw_seeds(n, entropy=seed)
            changes["calibration_seed"] = seed
        if output_dir is not None:
            changes["output_dir"] = str(output_dir)
        if changes:
            cfg = cfg.replace(**changes)
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(code=2)

    try:
        result = run_analysis(cfg, resume=resume)
    except DataMismatchError as e:
        console.print(f"[red]Data error: {e}[/red]")
        raise typer.Exit(code=1)
    except SamplerError as e:
        console.print(f"[red]Sampling failed: {e}[/red]")
        raise typer.Exit(code=1)

    mle = result.mle
    flag = " [yellow](provisional)[/yellow]" if mle.provisional else ""
    console.print(f"\n[bold]MLE[/bold] log-likelihood {mle.log_likelihood:.4f}, AIC {mle.aic:.2f}{flag}")
    _print_model_comparison(result.model_comparison)
    if result.failed_chains:
        console.print(f"[yellow]Failed chains: {result.failed_chains}[/yellow]")
    _print_diagnostics(result.diagnostics)
    _print_summary(result.summary)
    console.print(f"\nResults written to {cfg.output_path}")


@app.command()
def diagnose(
    traces: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Chain CSV traces"),
    burn_in: int = typer.Option(0, help="Discard rows with step index below this"),
    min_ess: float = typer.Option(200.0, help="Minimum pooled ESS"),
    max_rhat: float = typer.Option(1.1, help="Maximum R-hat"),
):
    """Compute ESS and R-hat for chain traces."""
    from fernsse.core.diagnostics import diagnose_chains

    report = diagnose_chains(
        _read_traces(traces), burn_in=burn_in, min_ess=min_ess, max_rhat=max_rhat
    )
    _print_diagnostics(report)
    if not report.converged:
        raise typer.Exit(code=1)


@app.command()
def summarize(
    traces: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Chain CSV traces"),
    burn_in: int = typer.Option(0, help="Discard rows with step index below this"),
    compare: Optional[List[str]] = typer.Option(None, help="Comparison a:b, reported as P(a > b)"),
    output: Optional[Path] = typer.Option(None, help="Write the summary as JSON"),
):
    """Summarize pooled posterior samples from chain traces."""
    from fernsse.core.summary import pool_chains, summarize_posterior

    try:
        comparisons = _parse_comparisons(compare)
        pool = pool_chains(_read_traces(traces), burn_in=burn_in)
        summary = summarize_posterior(pool, comparisons=comparisons)
    except (KeyError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    _print_summary(summary)
    if output is not None:
        summary.to_json(output)
        console.print(f"Summary written to {output}")


if __name__ == "__main__":
    app()
