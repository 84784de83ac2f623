#!/usr/bin/env python3
"""
Command line interface for bulkde.

Runs the differential expression pipeline on delimited count and metadata
tables and prints a summary with rich.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from bulkde.config import PipelineConfig
from bulkde.core import BulkDECoreError
from bulkde.tools import BulkRNASeqError, BulkRNASeqService
from bulkde.tools.bulk_rnaseq_service import ranking_from_results
from bulkde.utils import set_log_level
from bulkde.version import __version__

console = Console()

app = typer.Typer(
    name="bulkde",
    help="bulkde - bulk RNA-seq differential expression and gene-set enrichment",
    add_completion=False,
    rich_markup_mode="rich",
)


def setup_logging(verbose: bool = False) -> None:
    """Install a RichHandler on the root logger; bulkde loggers propagate to it."""
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root_logger.handlers):
        root_logger.addHandler(
            RichHandler(console=console, show_path=False, rich_tracebacks=True)
        )
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)

    # Loggers created at import time carry their own stdout handler
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("bulkde"):
            module_logger = logging.getLogger(name)
            module_logger.handlers.clear()
            module_logger.propagate = True
    set_log_level("DEBUG" if verbose else "INFO")


def _build_config(**options: Any) -> PipelineConfig:
    """Environment-backed config with explicitly passed CLI options on top."""
    overrides: Dict[str, Any] = {k: v for k, v in options.items() if v is not None}
    numerator = overrides.pop("numerator", None)
    reference = overrides.pop("reference", None)
    if numerator is not None or reference is not None:
        if numerator is None or reference is None:
            raise typer.BadParameter("--numerator and --reference must be given together")
        overrides["contrast_levels"] = (numerator, reference)
    return PipelineConfig.from_env(**overrides)


def _fail(error: Exception) -> None:
    console.print(f"[red]❌ {type(error).__name__}: {error}[/red]")
    details = getattr(error, "details", None)
    if details:
        for key, value in details.items():
            console.print(f"[dim]  {key}: {value}[/dim]")
    raise typer.Exit(1)


def _print_summary(stats: Dict[str, Any]) -> None:
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    summary = stats.get("summary", {})
    loading = stats.get("loading", {})
    testing = stats.get("testing", {})
    rows = [
        ("Contrast", stats.get("contrast")),
        ("Genes kept after filtering", loading.get("n_genes_kept")),
        ("Genes tested", testing.get("n_genes_tested")),
        ("Failed fits", testing.get("n_failed_fits")),
        ("Independently filtered", testing.get("n_independent_filtered")),
        ("Upregulated", summary.get("n_up")),
        ("Downregulated", summary.get("n_down")),
        ("Dispersion trend", stats.get("dispersion", {}).get("fit_type")),
    ]
    if "ora" in stats:
        rows.append(("ORA sets reported", stats["ora"].get("n_sets_reported")))
        rows.append(("GSEA sets tested", stats["gsea"].get("n_sets_tested")))
    for name, value in rows:
        table.add_row(name, "[dim]n/a[/dim]" if value is None else str(value))

    console.print(Panel.fit(table, title="[bold]bulkde summary[/bold]"))


@app.command()
def run(
    counts: Path = typer.Argument(..., help="Genes x samples count table"),
    metadata: Path = typer.Argument(..., help="Sample metadata table"),
    gene_sets: Optional[Path] = typer.Option(
        None, "--gene-sets", "-g", help="GMT gene-set collection for enrichment"
    ),
    factor: Optional[str] = typer.Option(
        None, "--factor", "-f", help="Metadata column holding the contrast"
    ),
    numerator: Optional[str] = typer.Option(None, help="Numerator level"),
    reference: Optional[str] = typer.Option(None, help="Reference level"),
    alpha: Optional[float] = typer.Option(None, help="Adjusted p-value cutoff"),
    test: Optional[str] = typer.Option(None, help="wald or lrt"),
    threshold: Optional[int] = typer.Option(
        None, help="Drop genes with total count <= threshold"
    ),
    permutations: Optional[int] = typer.Option(None, help="GSEA permutations"),
    seed: Optional[int] = typer.Option(None, help="GSEA permutation seed"),
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", "-j", help="Worker threads"),
    results_dir: Optional[Path] = typer.Option(
        None, "--results-dir", "-o", help="Output directory"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run normalization, DE testing and (with --gene-sets) enrichment."""
    setup_logging(verbose)
    try:
        config = _build_config(
            counts_path=counts,
            metadata_path=metadata,
            gene_sets_path=gene_sets,
            contrast_factor=factor,
            numerator=numerator,
            reference=reference,
            alpha=alpha,
            test=test,
            count_threshold=threshold,
            permutations=permutations,
            seed=seed,
            n_jobs=n_jobs,
            results_dir=results_dir,
        )
        result, paths = BulkRNASeqService(config).run_from_files()
    except (BulkDECoreError, BulkRNASeqError) as e:
        _fail(e)

    _print_summary(result.stats)
    for name, path in paths.items():
        console.print(f"[green]✓[/green] {name}: {path}")


@app.command()
def de(
    counts: Path = typer.Argument(..., help="Genes x samples count table"),
    metadata: Path = typer.Argument(..., help="Sample metadata table"),
    factor: Optional[str] = typer.Option(None, "--factor", "-f"),
    numerator: Optional[str] = typer.Option(None, help="Numerator level"),
    reference: Optional[str] = typer.Option(None, help="Reference level"),
    alpha: Optional[float] = typer.Option(None, help="Adjusted p-value cutoff"),
    test: Optional[str] = typer.Option(None, help="wald or lrt"),
    threshold: Optional[int] = typer.Option(
        None, help="Drop genes with total count <= threshold"
    ),
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", "-j"),
    output: Path = typer.Option(
        Path("de_results.tsv"), "--output", "-o", help="DE result table"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run differential expression only and write the result table."""
    setup_logging(verbose)
    try:
        config = _build_config(
            contrast_factor=factor,
            numerator=numerator,
            reference=reference,
            alpha=alpha,
            test=test,
            count_threshold=threshold,
            n_jobs=n_jobs,
        )
        service = BulkRNASeqService(config)
        result = service.run_differential_expression_analysis(
            service.loader.load_count_matrix(counts),
            service.loader.load_metadata(metadata),
        )
        path = service.loader.write_de_results(result.de_results, output)
    except (BulkDECoreError, BulkRNASeqError) as e:
        _fail(e)

    _print_summary(result.stats)
    console.print(f"[green]✓[/green] de_results: {path}")


@app.command()
def enrich(
    de_results: Path = typer.Argument(..., help="Table written by 'bulkde de'"),
    gene_sets: Path = typer.Argument(..., help="GMT gene-set collection"),
    alpha: Optional[float] = typer.Option(None, help="Adjusted p-value cutoff"),
    test: Optional[str] = typer.Option(None, help="Test that produced the table"),
    permutations: Optional[int] = typer.Option(None),
    seed: Optional[int] = typer.Option(None),
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", "-j"),
    results_dir: Path = typer.Option(Path("."), "--results-dir", "-o"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run ORA and preranked GSEA on an existing DE result table."""
    setup_logging(verbose)
    try:
        config = _build_config(
            alpha=alpha,
            test=test,
            permutations=permutations,
            seed=seed,
            n_jobs=n_jobs,
        )
        service = BulkRNASeqService(config)
        table = service.loader.read_de_results(de_results)
        enrichment = service.run_pathway_enrichment(
            table, service.loader.read_gmt(gene_sets)
        )
        ora_path = service.loader.write_enrichment_results(
            enrichment["ora_results"], results_dir / "ora_results.tsv"
        )
        gsea_path = service.loader.write_enrichment_results(
            enrichment["gsea_results"], results_dir / "gsea_results.tsv"
        )
    except (BulkDECoreError, BulkRNASeqError) as e:
        _fail(e)

    console.print(
        f"Ranked {len(ranking_from_results(table, config.test))} genes; "
        f"{enrichment['ora']['n_sets_reported']} ORA sets with overlap, "
        f"{enrichment['gsea']['n_sets_tested']} GSEA sets tested"
    )
    console.print(f"[green]✓[/green] ora_results: {ora_path}")
    console.print(f"[green]✓[/green] gsea_results: {gsea_path}")


@app.command()
def config_show():
    """Display the configuration resolved from BULKDE_* variables and .env."""
    try:
        config = PipelineConfig.from_env()
    except BulkDECoreError as e:
        _fail(e)

    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    for key, value in config.to_dict().items():
        if isinstance(value, dict):
            table.add_row(f"[bold]{key}", "")
            for sub_key, sub_value in value.items():
                table.add_row(f"  {sub_key}", str(sub_value))
        else:
            table.add_row(key, "[dim]Not set[/dim]" if value is None else str(value))

    console.print(Panel.fit(table, title=f"[bold]bulkde {__version__} configuration[/bold]"))


if __name__ == "__main__":
    app()
