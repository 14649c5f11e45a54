"""Command line interface for the kaldiflow decode pipeline."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import typer

from .pipeline import orchestrator
from .pipeline.config import DecodeConfig, build_decode_config
from .pipeline.errors import ExternalToolError, PipelineError
from .pipeline.layout import RunLayout
from .pipeline.naming import NameMap, restore_names
from .pipeline.stages.utils import read_json_safe

app = typer.Typer(
    help="""Batch transcription of a directory of recordings with Kaldi.\n\nExamples:\n\n  • kaldiflow decode /data/show1 /work/show1 --nj 8\n  • kaldiflow resume /data/show1 /work/show1\n  • kaldiflow names /work/show1 1Best.raw.ctm""",
    rich_markup_mode="markdown",
    no_args_is_help=True,
)

BUILTIN_PROFILES: Dict[str, Dict[str, Any]] = {
    "default": {},
    "fast": {
        "first_beam": 8.0,
        "beam": 10.0,
        "lattice_beam": 4.0,
        "max_active": 5000,
        "fmmi_max_active": 5000,
    },
    "accurate": {
        "beam": 15.0,
        "lattice_beam": 8.0,
        "rnn": True,
    },
    "telephone": {
        "cts": True,
        "speech_types": ["MT", "FT"],
    },
}

# Keys that describe one invocation rather than the decode setup.
_NOT_RESUMED = ("run_id", "stage", "quiet")


def _load_profile(profile: Optional[str]) -> Dict[str, Any]:
    if not profile:
        return {}

    if profile in BUILTIN_PROFILES:
        return dict(BUILTIN_PROFILES[profile])

    profile_path = Path(profile)
    if not profile_path.exists():
        raise typer.BadParameter(f"Profile '{profile}' not found.")

    try:
        data = json.loads(profile_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Profile file '{profile}' is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise typer.BadParameter(f"Profile file '{profile}' must contain a JSON object of overrides.")
    return data


def _normalise_path(value: Optional[Path]) -> Optional[str]:
    if value is None:
        return None
    return str(value.expanduser().resolve())


def _default_config() -> DecodeConfig:
    return DecodeConfig()


def _merge_configs(profile_overrides: Dict[str, Any], cli_overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Explicit CLI values win, unless they only repeat a default the profile overrides."""

    merged: Dict[str, Any] = dict(profile_overrides)
    defaults = _default_config().model_dump(mode="python")
    for key, value in cli_overrides.items():
        if value is None:
            continue
        if key in profile_overrides and defaults.get(key) == value:
            continue
        merged[key] = value
    return merged


def _build_config(merged: Dict[str, Any]) -> DecodeConfig:
    try:
        return build_decode_config(merged)
    except ValueError as exc:
        raise typer.BadParameter(f"Configuration error: {exc}") from exc


def _validate_dirs(source_dir: Path, target_dir: Path) -> None:
    if not source_dir.is_dir():
        raise typer.BadParameter(f"Source directory '{source_dir}' does not exist.")
    if target_dir.resolve() == source_dir.resolve():
        raise typer.BadParameter("Target directory must differ from the source directory.")


def _report_failure(exc: Exception) -> None:
    output = exc.output.strip() if isinstance(exc, ExternalToolError) else ""
    typer.secho(output or str(exc), fg=typer.colors.RED, err=True)


def _speech_types(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return value.replace(",", " ").split()


@app.command("decode")
def decode(
    source_dir: Path = typer.Argument(..., help="Directory with .wav recordings and optional .uem/.stm files."),
    target_dir: Path = typer.Argument(..., help="Directory receiving Intermediate/ and the transcripts."),
    profile: Optional[str] = typer.Option(
        None, help="Configuration profile name (default/fast/accurate/telephone) or JSON path."
    ),
    cmd: str = typer.Option("run.pl", help="Parallel wrapper for Kaldi jobs, or 'local' to run in-process."),
    nj: int = typer.Option(4, help="Number of parallel decode jobs."),
    max_jobs_run: Optional[int] = typer.Option(None, help="Concurrently running jobs (defaults to --nj)."),
    stage: int = typer.Option(1, help="First stage to run (1-5)."),
    num_threads: int = typer.Option(1, help="Threads per decode job."),
    inv_acoustic_scale: float = typer.Option(11.0, help="Inverse acoustic scale for 1-best and N-best."),
    first_beam: float = typer.Option(10.0, help="Beam of the speaker-independent fMLLR pass."),
    first_max_active: int = typer.Option(2000, help="max-active of the speaker-independent pass."),
    silence_weight: float = typer.Option(0.01, help="Silence weight for fMLLR estimation."),
    max_active: int = typer.Option(7000, help="max-active for fMLLR decoding."),
    fmmi_max_active: int = typer.Option(7000, help="max-active for fMMI decoding."),
    acwt: float = typer.Option(0.083333, help="Acoustic weight for transforms and lattices."),
    beam: float = typer.Option(13.0, help="Decoding beam."),
    lattice_beam: float = typer.Option(6.0, help="Lattice beam."),
    speech_types: Optional[str] = typer.Option(None, help="Speech types to decode, e.g. 'MS FS MT FT'."),
    nbest: int = typer.Option(0, help="Produce an N-best CTM with this many hypotheses (0 disables)."),
    cts: bool = typer.Option(False, "--cts/--no-cts", help="Use CTS models for telephone speech."),
    rnn: bool = typer.Option(False, "--rnn/--no-rnn", help="Rescore with the RNN language model."),
    rnn_nbest: int = typer.Option(1000, help="N-best list size for RNN rescoring."),
    rnn_weight: float = typer.Option(0.5, help="Interpolation weight of the RNN language model."),
    graph: str = typer.Option("graph_3gpr", help="Decoding graph directory name."),
    small_lm: str = typer.Option("3gpr", help="Language model matching the decoding graph."),
    large_lm: str = typer.Option("4gpr_const", help="Const-arpa language model used for rescoring."),
    rnn_model: Optional[Path] = typer.Option(None, help="RNN language model directory."),
    recipe_dir: Optional[Path] = typer.Option(None, help="Recipe directory holding steps/, utils/, local/, conf/."),
    model_dir: Optional[Path] = typer.Option(None, help="Model directory (defaults to <recipe>/models)."),
    glm_file: Optional[Path] = typer.Option(None, help="GLM file for csrfilt.sh."),
    number_words: Optional[Path] = typer.Option(None, help="Number word table for number joining."),
    compound_words: Optional[Path] = typer.Option(None, help="Compound table for compound restoration."),
    quiet: bool = typer.Option(False, "--quiet", help="Only show warnings and errors on the console."),
) -> None:
    """Decode every recording in SOURCE_DIR into TARGET_DIR."""

    cli_overrides = dict(
        cmd=cmd,
        nj=nj,
        max_jobs_run=max_jobs_run,
        stage=stage,
        num_threads=num_threads,
        inv_acoustic_scale=inv_acoustic_scale,
        first_beam=first_beam,
        first_max_active=first_max_active,
        silence_weight=silence_weight,
        max_active=max_active,
        fmmi_max_active=fmmi_max_active,
        acwt=acwt,
        beam=beam,
        lattice_beam=lattice_beam,
        speech_types=_speech_types(speech_types),
        nbest=nbest,
        cts=cts,
        rnn=rnn,
        rnn_nbest=rnn_nbest,
        rnn_weight=rnn_weight,
        graph=graph,
        small_lm=small_lm,
        large_lm=large_lm,
        rnn_model=_normalise_path(rnn_model),
        recipe_dir=_normalise_path(recipe_dir),
        model_dir=_normalise_path(model_dir),
        glm_file=_normalise_path(glm_file),
        number_words=_normalise_path(number_words),
        compound_words=_normalise_path(compound_words),
        quiet=quiet,
    )
    merged = _merge_configs(_load_profile(profile), cli_overrides)
    config = _build_config(merged)
    _validate_dirs(source_dir, target_dir)

    try:
        summary = orchestrator.run_decode(source_dir, target_dir, config=config)
    except (PipelineError, OSError, ValueError) as exc:
        _report_failure(exc)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(summary, indent=2, default=str))


@app.command("resume")
def resume(
    source_dir: Path = typer.Argument(..., help="Source directory of the original run."),
    target_dir: Path = typer.Argument(..., help="Target directory of the original run."),
    profile: Optional[str] = typer.Option(None, help="Profile applied on top of the previous configuration."),
    stage: Optional[int] = typer.Option(None, help="Restart from this stage instead of the recorded progress."),
    cmd: Optional[str] = typer.Option(None, help="Parallel wrapper for Kaldi jobs."),
    nj: Optional[int] = typer.Option(None, help="Number of parallel decode jobs."),
    max_jobs_run: Optional[int] = typer.Option(None, help="Concurrently running jobs."),
    nbest: Optional[int] = typer.Option(None, help="N-best CTM size (0 disables)."),
    recipe_dir: Optional[Path] = typer.Option(None, help="Recipe directory."),
    quiet: bool = typer.Option(False, "--quiet", help="Only show warnings and errors on the console."),
) -> None:
    """Continue an interrupted run after its last completed stage."""

    layout = RunLayout(target_dir)
    previous = read_json_safe(layout.run_summary) or {}
    snapshot = (previous.get("stats") or {}).get("config_snapshot") or {}
    base = {key: value for key, value in snapshot.items() if key not in _NOT_RESUMED}
    base.update(_load_profile(profile))

    overrides = dict(
        stage=stage,
        cmd=cmd,
        nj=nj,
        max_jobs_run=max_jobs_run,
        nbest=nbest,
        recipe_dir=_normalise_path(recipe_dir),
        quiet=quiet or None,
    )
    merged = dict(base)
    merged.update({key: value for key, value in overrides.items() if value is not None})
    _build_config(merged)
    _validate_dirs(source_dir, target_dir)

    try:
        summary = orchestrator.resume(source_dir, target_dir, config=merged)
    except (PipelineError, OSError, ValueError) as exc:
        _report_failure(exc)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(summary, indent=2, default=str))


@app.command("diagnostics")
def diagnostics(
    strict: bool = typer.Option(False, help="Require minimum dependency versions."),
    recipe_dir: Optional[Path] = typer.Option(None, help="Recipe directory to inspect."),
) -> None:
    """Report Python dependency and external tool availability as JSON."""

    config = {"recipe_dir": _normalise_path(recipe_dir)} if recipe_dir else None
    result = orchestrator.diagnostics(require_versions=strict, config=config)
    typer.echo(json.dumps(result, indent=2))


@app.command("names")
def names(
    target_dir: Path = typer.Argument(..., help="Target directory of a run."),
    table: Path = typer.Argument(..., help="Table to translate; relative names are looked up in Data/ALL."),
) -> None:
    """Print TABLE with canonical utterance ids mapped back to the original ids."""

    layout = RunLayout(target_dir)
    segconv = layout.table("segconv")
    if not segconv.exists():
        raise typer.BadParameter(f"No rename table at {segconv}; run stage 1 first.")
    path = table if table.exists() else layout.table(str(table))
    if not path.exists():
        raise typer.BadParameter(f"Table '{table}' not found.")

    name_map = NameMap.load(segconv)
    lines = path.read_text(encoding="utf-8").splitlines()
    for line in restore_names(lines, name_map):
        typer.echo(line)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and return its exit code; usage errors map to 1."""

    try:
        rv = app(args=argv, prog_name="kaldiflow", standalone_mode=False)
    except click.exceptions.Exit as exc:
        return exc.exit_code
    except click.ClickException as exc:
        exc.show()
        return 1
    except click.Abort:
        typer.echo("Aborted!", err=True)
        return 1
    return rv if isinstance(rv, int) else 0


def run() -> None:
    """Console script entry point."""

    sys.exit(main())


if __name__ == "__main__":  # pragma: no cover
    run()
