# hld_bench/config.py
import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from hld_bench.entities import ModelConfig, ModelsFile, Problem
from hld_bench.llm_client import VERTEX_PROVIDERS

load_dotenv()
load_dotenv(".env.local", override=True)

logger = logging.getLogger("hld_bench")


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


# Manual-loop attempt budget (the constrained attempt is extra)
DEFAULT_MAX_ATTEMPTS = _int_from_env("HLD_BENCH_MAX_ATTEMPTS", 2)
# Some providers default to ~1k output tokens, which truncates an HLD record
DEFAULT_MAX_OUTPUT_TOKENS = _int_from_env("HLD_BENCH_MAX_OUTPUT_TOKENS", 16384)

VERTEX_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT")
VERTEX_REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")


# -----------------------
# Environment / API keys
# -----------------------

BUILTIN_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    # Vertex AI authenticates through application-default credentials; the project is what must be set.
    **{provider: "GOOGLE_CLOUD_PROJECT" for provider in VERTEX_PROVIDERS},
}


def resolve_env_var(config: ModelConfig) -> Optional[str]:
    if config.env_var:
        return config.env_var
    provider = config.provider.lower()
    if provider in BUILTIN_ENV_KEYS:
        return BUILTIN_ENV_KEYS[provider]
    # Custom provider: <PROVIDER>_API_KEY
    return f"{config.provider.upper()}_API_KEY"


def validate_env_for_model(config: ModelConfig) -> None:
    env_var = resolve_env_var(config)
    if env_var and not os.getenv(env_var):
        raise RuntimeError(
            f"Missing environment variable: {env_var} (required for {config.provider} model {config.id})"
        )


# -----------------------
# Default models
# -----------------------

DEFAULT_MODELS: List[ModelConfig] = [
    # OpenAI
    ModelConfig(id="gpt-5.2", provider="openai", model="gpt-5.2", display_name="GPT-5.2"),
    ModelConfig(id="gpt-5-mini", provider="openai", model="gpt-5-mini", display_name="GPT-5 Mini"),
    ModelConfig(id="gpt-4.1", provider="openai", model="gpt-4.1", display_name="GPT-4.1"),
    # Anthropic
    ModelConfig(id="claude-opus-4-6", provider="anthropic", model="claude-opus-4-6", display_name="Claude Opus 4.6"),
    ModelConfig(id="claude-sonnet-4-5", provider="anthropic", model="claude-sonnet-4-5", display_name="Claude Sonnet 4.5"),
    ModelConfig(id="claude-haiku-4-5", provider="anthropic", model="claude-haiku-4-5", display_name="Claude Haiku 4.5"),
    ModelConfig(id="claude-sonnet-4", provider="anthropic", model="claude-sonnet-4-20250514", display_name="Claude Sonnet 4"),
    # Gemini
    ModelConfig(id="gemini-3-pro-preview", provider="gemini", model="gemini-3-pro-preview", display_name="Gemini 3 Pro Preview"),
    ModelConfig(id="gemini-3-flash-preview", provider="gemini", model="gemini-3-flash-preview", display_name="Gemini 3 Flash Preview"),
    ModelConfig(id="gemini-2.5-pro", provider="gemini", model="gemini-2.5-pro", display_name="Gemini 2.5 Pro"),
    ModelConfig(id="gemini-2.0-flash", provider="gemini", model="gemini-2.0-flash", display_name="Gemini 2.0 Flash"),
]


# -----------------------
# Paths
# -----------------------

def get_project_root() -> Path:
    return Path(os.getenv("HLD_BENCH_ROOT") or os.getcwd())


def get_problems_dir() -> Path:
    return get_project_root() / "problems"


def get_output_dir() -> Path:
    return get_project_root() / "output"


# -----------------------
# Models / problems loading
# -----------------------

def _read_yaml(path: Path):
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def _parse_models_file(path: Path) -> List[ModelConfig]:
    try:
        return ModelsFile.model_validate(_read_yaml(path)).models
    except ValidationError as e:
        raise ValueError(f"Invalid models config file {path}: {e}") from e


def load_models(config_path: str | os.PathLike | None = None) -> List[ModelConfig]:
    """
    An explicit path must exist; otherwise `models.yaml` in the project root
    is used when present, and DEFAULT_MODELS when not.
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Models config file not found: {path}")
        return _parse_models_file(path)

    auto_path = get_project_root() / "models.yaml"
    if auto_path.exists():
        logger.info(f"Loading models from {auto_path}")
        return _parse_models_file(auto_path)

    return list(DEFAULT_MODELS)


def load_problems(problems_dir: str | os.PathLike) -> List[Problem]:
    problems_dir = Path(problems_dir)
    if not problems_dir.is_dir():
        raise FileNotFoundError(f"Problems directory not found: {problems_dir}")

    files = sorted(p for p in problems_dir.iterdir() if p.suffix in (".yaml", ".yml"))
    if not files:
        raise FileNotFoundError(f"No problem files found in: {problems_dir}")

    problems: List[Problem] = []
    for path in files:
        try:
            problems.append(Problem.model_validate(_read_yaml(path)))
        except (ValidationError, yaml.YAMLError) as e:
            logger.warning(f"Skipping invalid problem file {path.name}: {e}")
    return problems
