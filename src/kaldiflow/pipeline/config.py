"""Configuration defaults and dependency helpers for the kaldiflow pipeline."""

from __future__ import annotations

import os
import shutil
from dataclasses import asdict, dataclass, field
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from packaging.version import InvalidVersion, Version

SPEECH_TYPES: tuple[str, ...] = ("MS", "FS", "MT", "FT")
LOCAL_CMD = "local"


def _ensure_path(value: Path | str) -> Path:
    if isinstance(value, Path):
        return value
    return Path(value)


def _ensure_optional_path(value: Path | str | None) -> Path | None:
    if value is None:
        return None
    return _ensure_path(value)


def _ensure_path_list(value: Iterable[Path | str] | Path | str | None) -> list[Path]:
    if value is None:
        return []
    if isinstance(value, (str, Path)):
        return [_ensure_path(value)]
    return [_ensure_path(item) for item in value]


def _ensure_speech_types(value: Iterable[str] | str) -> list[str]:
    if isinstance(value, str):
        items = value.split()
    else:
        items = [str(item) for item in value]
    normalised: list[str] = []
    for item in items:
        item = item.strip().upper()
        if not item:
            continue
        if item not in SPEECH_TYPES:
            raise ValueError(f"speech_types entries must be one of {list(SPEECH_TYPES)}, got {item!r}")
        if item not in normalised:
            normalised.append(item)
    if not normalised:
        raise ValueError("speech_types must name at least one speech type")
    return normalised


@dataclass(slots=True)
class DecodeConfig:
    """Validated configuration for a decode run."""

    cmd: str = "run.pl"
    nj: int = 4
    max_jobs_run: int | None = None
    stage: int = 1
    num_threads: int = 1
    inv_acoustic_scale: float = 11.0
    # decode_fmllr
    first_beam: float = 10.0
    first_max_active: int = 2000
    silence_weight: float = 0.01
    max_active: int = 7000
    # decode_fmmi
    fmmi_max_active: int = 7000
    # decode_fmllr and decode_fmmi
    acwt: float = 0.083333
    beam: float = 13.0
    lattice_beam: float = 6.0
    rnn_nbest: int = 1000
    rnn_weight: float = 0.5
    speech_types: list[str] = field(default_factory=lambda: list(SPEECH_TYPES))
    nbest: int = 0
    cts: bool = False
    rnn: bool = False
    graph: str = "graph_3gpr"
    small_lm: str = "3gpr"
    large_lm: str = "4gpr_const"
    rnn_model: Path = field(default_factory=lambda: Path("models/rnnlm"))
    recipe_dir: Path = field(default_factory=Path.cwd)
    model_dir: Path | None = None
    lium_jar: Path = field(default_factory=lambda: Path("lib/lium_spkdiarization-8.4.1.jar"))
    java_heap: str = "2024m"
    mfcc_config: Path = field(default_factory=lambda: Path("conf/mfcc.conf"))
    glm_file: Path | None = field(default_factory=lambda: Path("local/nbest-eval-2008.glm"))
    number_words: Path | None = None
    compound_words: Path | None = None
    extra_path: list[Path] = field(default_factory=list)
    quiet: bool = False
    run_id: str | None = None

    def __post_init__(self) -> None:
        self.rnn_model = _ensure_path(self.rnn_model)
        self.recipe_dir = _ensure_path(self.recipe_dir)
        self.model_dir = _ensure_optional_path(self.model_dir)
        self.lium_jar = _ensure_path(self.lium_jar)
        self.mfcc_config = _ensure_path(self.mfcc_config)
        self.glm_file = _ensure_optional_path(self.glm_file)
        self.number_words = _ensure_optional_path(self.number_words)
        self.compound_words = _ensure_optional_path(self.compound_words)
        self.extra_path = _ensure_path_list(self.extra_path)
        self.speech_types = _ensure_speech_types(self.speech_types)

        if not self.cmd or not str(self.cmd).strip():
            raise ValueError("cmd must not be empty")
        if self.nj < 1:
            raise ValueError("nj must be >= 1")
        if self.max_jobs_run is not None and self.max_jobs_run < 1:
            raise ValueError("max_jobs_run must be >= 1 when provided")
        if not (1 <= self.stage <= 5):
            raise ValueError("stage must be between 1 and 5")
        if self.num_threads < 1:
            raise ValueError("num_threads must be >= 1")
        if self.inv_acoustic_scale <= 0.0:
            raise ValueError("inv_acoustic_scale must be > 0")
        if self.acwt <= 0.0:
            raise ValueError("acwt must be > 0")
        for name in ("first_beam", "beam", "lattice_beam"):
            if getattr(self, name) <= 0.0:
                raise ValueError(f"{name} must be > 0")
        for name in ("first_max_active", "max_active", "fmmi_max_active"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if not (0.0 <= self.silence_weight <= 1.0):
            raise ValueError("silence_weight must be between 0.0 and 1.0")
        if self.nbest < 0:
            raise ValueError("nbest must be >= 0 (0 disables N-best output)")
        if self.rnn_nbest < 1:
            raise ValueError("rnn_nbest must be >= 1")
        if not (0.0 <= self.rnn_weight <= 1.0):
            raise ValueError("rnn_weight must be between 0.0 and 1.0")

    @property
    def acoustic_scale(self) -> float:
        return 1.0 / self.inv_acoustic_scale

    @property
    def jobs_limit(self) -> int:
        """Upper bound on concurrently running shards."""

        return self.max_jobs_run or self.nj

    @property
    def kaldi_cmd(self) -> str:
        """The parallel wrapper handed to Kaldi ``steps/`` scripts."""

        return "run.pl" if self.cmd == LOCAL_CMD else self.cmd

    def resolve(self, path: Path) -> Path:
        """Resolve ``path`` against the recipe directory."""

        return path if path.is_absolute() else self.recipe_dir / path

    @property
    def models_root(self) -> Path:
        return self.resolve(self.model_dir or Path("models"))

    def bandwidth_for(self, speech_type: str) -> str:
        """Model set used for a speech type (telephone speech may use CTS models)."""

        if speech_type.endswith("T") and self.cts:
            return "CTS"
        return "BN"

    def subprocess_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.extra_path:
            prefix = os.pathsep.join(str(self.resolve(p)) for p in self.extra_path)
            env["PATH"] = prefix + os.pathsep + env.get("PATH", "")
        return env

    def model_dump(self, mode: str = "python") -> dict[str, Any]:
        data = asdict(self)
        if mode == "json":
            for key, value in data.items():
                if isinstance(value, Path):
                    data[key] = str(value)
                elif isinstance(value, list):
                    data[key] = [str(item) if isinstance(item, Path) else item for item in value]
        return data

    @classmethod
    def model_validate(cls, data: Mapping[str, Any] | "DecodeConfig") -> "DecodeConfig":
        if isinstance(data, cls):
            return data
        if not isinstance(data, Mapping):
            raise TypeError("DecodeConfig.model_validate expects a mapping or DecodeConfig instance")
        return cls(**data)


DEFAULT_DECODE_CONFIG: dict[str, Any] = DecodeConfig(recipe_dir=Path(".")).model_dump(mode="python")

CORE_DEPENDENCY_REQUIREMENTS: dict[str, str] = {
    "numpy": "1.24",
    "soundfile": "0.12",
    "typer": "0.9",
    "packaging": "23.0",
}

# External tools looked up on PATH, grouped by the stage that needs them.
EXTERNAL_TOOLS: dict[str, tuple[str, ...]] = {
    "data_prep": ("java",),
    "transcripts": (
        "lattice-push",
        "lattice-align-words",
        "lattice-to-ctm-conf",
        "lattice-to-nbest",
        "nbest-to-ctm",
        "csrfilt.sh",
    ),
    "scoring": ("asclite", "sclite"),
}

# Recipe scripts resolved against ``recipe_dir``.
RECIPE_SCRIPTS: tuple[str, ...] = (
    "utils/fix_data_dir.sh",
    "utils/subset_data_dir.sh",
    "steps/make_mfcc.sh",
    "steps/compute_cmvn_stats.sh",
    "steps/decode_fmllr.sh",
    "steps/decode_fmmi.sh",
    "steps/lmrescore_const_arpa.sh",
    "steps/rnnlmrescore.sh",
)

__all__ = [
    "CORE_DEPENDENCY_REQUIREMENTS",
    "DEFAULT_DECODE_CONFIG",
    "DecodeConfig",
    "EXTERNAL_TOOLS",
    "LOCAL_CMD",
    "RECIPE_SCRIPTS",
    "SPEECH_TYPES",
    "build_decode_config",
    "dependency_health_summary",
    "diagnostics",
    "tool_health_summary",
    "verify_dependencies",
]


def build_decode_config(overrides: Mapping[str, Any] | DecodeConfig | None = None) -> DecodeConfig:
    """Return a validated configuration merged with overrides."""

    if isinstance(overrides, DecodeConfig):
        return overrides

    base = DecodeConfig()
    if not overrides:
        return base

    merged: dict[str, Any] = base.model_dump(mode="python")
    for key, value in overrides.items():
        if key not in merged:
            raise ValueError(f"Unknown configuration key: {key}")
        if value is None:
            continue
        merged[key] = value

    try:
        return DecodeConfig.model_validate(merged)
    except (TypeError, ValueError) as exc:
        raise ValueError(str(exc)) from exc


def _iter_dependency_status() -> Iterator[tuple[str, str, str | None, Exception | None]]:
    for mod, min_ver in CORE_DEPENDENCY_REQUIREMENTS.items():
        try:
            module = __import__(mod)
        except ImportError as exc:
            yield mod, min_ver, None, exc
            continue
        try:
            version = importlib_metadata.version(mod)
        except importlib_metadata.PackageNotFoundError:
            version = getattr(module, "__version__", None)
        yield mod, min_ver, version, None


def dependency_health_summary() -> dict[str, dict[str, Any]]:
    summary: dict[str, dict[str, Any]] = {}

    for mod, min_ver, version, import_error in _iter_dependency_status():
        entry: dict[str, Any] = {"required_min": min_ver}
        if import_error is not None:
            entry["status"] = "error"
            entry["issue"] = str(import_error)
            summary[mod] = entry
            continue

        entry["status"] = "ok"
        if version is None:
            entry["status"] = "warn"
            entry["issue"] = "version metadata unavailable"
        else:
            entry["version"] = str(version)
            try:
                if Version(str(version)) < Version(min_ver):
                    entry["status"] = "warn"
                    entry["issue"] = f"version {version} < required {min_ver}"
            except InvalidVersion as exc:
                entry["status"] = "warn"
                entry["issue"] = f"version comparison failed: {exc}"
        summary[mod] = entry

    return summary


def tool_health_summary(config: DecodeConfig | None = None) -> dict[str, dict[str, Any]]:
    """Report which external tools and recipe scripts can be found."""

    cfg = config or DecodeConfig()
    search_path = cfg.subprocess_env().get("PATH")
    summary: dict[str, dict[str, Any]] = {}

    for stage, tools in EXTERNAL_TOOLS.items():
        for tool in tools:
            located = shutil.which(tool, path=search_path)
            summary[tool] = {
                "stage": stage,
                "status": "ok" if located else "missing",
                "path": located,
            }

    for script in RECIPE_SCRIPTS:
        path = cfg.resolve(Path(script))
        summary[script] = {
            "stage": "recipe",
            "status": "ok" if path.exists() else "missing",
            "path": str(path),
        }

    lium = cfg.resolve(cfg.lium_jar)
    summary["lium"] = {
        "stage": "data_prep",
        "status": "ok" if lium.exists() else "missing",
        "path": str(lium),
    }
    return summary


def verify_dependencies(strict: bool = False) -> tuple[bool, list[str]]:
    """Check Python dependencies; ``strict`` also enforces minimum versions."""

    issues: list[str] = []
    for mod, entry in dependency_health_summary().items():
        if entry["status"] == "error":
            issues.append(f"Missing or failed to import: {mod} ({entry.get('issue')})")
        elif strict and entry["status"] == "warn":
            issues.append(f"{mod}: {entry.get('issue')}")
    return (len(issues) == 0), issues


def diagnostics(require_versions: bool = False, config: DecodeConfig | None = None) -> dict[str, Any]:
    """Return diagnostic information about Python and external dependencies."""

    ok, issues = verify_dependencies(strict=require_versions)
    tools = tool_health_summary(config)
    missing_tools = sorted(name for name, entry in tools.items() if entry["status"] != "ok")
    return {
        "ok": ok and not missing_tools,
        "issues": issues,
        "summary": dependency_health_summary(),
        "tools": tools,
        "missing_tools": missing_tools,
        "strict_versions": require_versions,
    }
