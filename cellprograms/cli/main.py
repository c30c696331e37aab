"""Command-line interface for CellPrograms.

Provides commands for the clustering branch, the meta-program branch and
the full analysis.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .. import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("cellprograms")


def input_options(func):
    """Options shared by every analysis command."""
    func = click.option("--seed", type=int, default=None,
                        help="Override random_seed from the configuration")(func)
    func = click.option("--out", "-o", "output_path", required=True, type=click.Path(),
                        help="Output directory")(func)
    func = click.option("--config", "-c", "config_path", type=click.Path(exists=True),
                        help="Analysis configuration file (YAML)")(func)
    func = click.option("--input", "-i", "input_path", type=click.Path(exists=True),
                        help="Single AnnData file (.h5ad) with an obs 'sample' column")(func)
    func = click.option("--registry", "-r", "registry_path", type=click.Path(exists=True),
                        help="Sample registry CSV with sample_id,path columns")(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="cellprograms")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """CellPrograms: clusters and recurrent gene programs from scRNA-seq counts.

    Examples:

        # Cluster cells from a sample registry
        cellprograms cluster --registry samples.csv --out results/

        # Derive meta-programs from per-sample NMF
        cellprograms programs --input merged.h5ad --config analysis.yaml --out results/

        # Run both branches
        cellprograms run --registry samples.csv --config analysis.yaml --out results/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


def _run_analysis(
    ctx: click.Context,
    registry_path: Optional[str],
    input_path: Optional[str],
    config_path: Optional[str],
    output_path: str,
    seed: Optional[int],
    clustering: bool,
    programs: bool,
) -> None:
    """Load inputs, run the pipeline and write the artifacts."""
    from ..config import AnalysisConfig
    from ..errors import CellProgramsError
    from ..io import load_h5ad, load_samples, log_yaml, write_artifacts
    from ..pipeline import AnalysisPipeline, PipelineLogger

    if bool(registry_path) == bool(input_path):
        raise click.UsageError("Provide exactly one of --registry or --input")

    logger = ctx.obj["logger"]
    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        config = AnalysisConfig.from_yaml(config_path) if config_path else AnalysisConfig.default()
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--config")
    config.run_clustering = clustering
    config.run_programs = programs
    if seed is not None:
        config.random_seed = seed

    level = "DEBUG" if ctx.obj["debug"] else ("INFO" if ctx.obj["verbose"] else "WARNING")
    pipeline_logger = PipelineLogger(out_dir / "logs", log_level=level)
    pipeline_logger.setup()

    try:
        store = load_samples(registry_path) if registry_path else load_h5ad(input_path)
        result = AnalysisPipeline(config, pipeline_logger=pipeline_logger).run(store)
    except CellProgramsError as exc:
        logger.debug("Run failed: %s", exc.to_dict())
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    written = write_artifacts(result.artifacts, out_dir, extra={"config": config.to_dict()})
    log_yaml(out_dir / "logs" / "run_summary.yaml", result.summary())

    for key, assignment in result.assignments.items():
        click.echo(f"{key}: {assignment.n_clusters} clusters (modularity {assignment.modularity:.3f})")
    if result.metaprograms is not None:
        click.echo(f"Meta-programs: {len(result.metaprograms.programs)}")
        if result.metaprograms.skipped_samples:
            click.echo(f"Skipped samples: {', '.join(result.metaprograms.skipped_samples)}")
    click.echo(f"Wrote {len(written)} files to {out_dir}")


@cli.command()
@input_options
@click.pass_context
def cluster(ctx: click.Context, registry_path, input_path, config_path, output_path, seed) -> None:
    """Cluster cells: QC, normalization, PCA, batch correction, Louvain, markers."""
    _run_analysis(ctx, registry_path, input_path, config_path, output_path, seed,
                  clustering=True, programs=False)


@cli.command()
@input_options
@click.pass_context
def programs(ctx: click.Context, registry_path, input_path, config_path, output_path, seed) -> None:
    """Derive meta-programs: per-sample NMF across ranks and consensus."""
    _run_analysis(ctx, registry_path, input_path, config_path, output_path, seed,
                  clustering=False, programs=True)


@cli.command()
@input_options
@click.pass_context
def run(ctx: click.Context, registry_path, input_path, config_path, output_path, seed) -> None:
    """Run the clustering and meta-program branches."""
    _run_analysis(ctx, registry_path, input_path, config_path, output_path, seed,
                  clustering=True, programs=True)


@cli.command("init-config")
@click.argument("path", type=click.Path())
def init_config(path: str) -> None:
    """Write the default analysis configuration to PATH."""
    from ..config import AnalysisConfig

    written = AnalysisConfig.default().to_yaml(path)
    click.echo(f"Default configuration written to: {written}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
