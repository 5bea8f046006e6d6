# hld_bench/runner.py
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from hld_bench.base_utils import BaseUtils, Timer
from hld_bench.benchmark_prompts import SYSTEM_PROMPT, build_user_prompt
from hld_bench.config import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_OUTPUT_TOKENS,
    VERTEX_PROJECT,
    VERTEX_REGION,
    resolve_env_var,
    validate_env_for_model,
)
from hld_bench.entities import HLDOutput, ModelConfig, Problem, RunMeta, RunResult
from hld_bench.llm_client import VERTEX_PROVIDERS, ChatLlmClient
from hld_bench.mermaid_sanitizer import sanitize_mermaid
from hld_bench.recovery import StructuredOutputRecovery
from hld_bench.writer import RunWriter


logger = logging.getLogger("hld_bench")


def default_client_factory(model_config: ModelConfig, cancel_event: threading.Event | None = None) -> ChatLlmClient:
    # Vertex authenticates with application-default credentials, every other provider with its key
    api_key = None
    if model_config.provider.lower() not in VERTEX_PROVIDERS:
        api_key = os.getenv(resolve_env_var(model_config))
    return ChatLlmClient(
        model_config,
        api_key=api_key,
        vertex_project=VERTEX_PROJECT,
        vertex_region=VERTEX_REGION,
        cancel_event=cancel_event,
    )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class BenchmarkSummary:
    total: int
    completed: int
    failed: int


class BenchmarkRunner(BaseUtils):
    """
    Runs problems x models: one recovery per pair, diagrams sanitized,
    record handed to the RunWriter. A failed pair is logged and counted,
    it never stops the batch.
    """

    def __init__(
        self,
        writer: RunWriter,
        *,
        client_factory: Callable[..., object] = default_client_factory,
        recovery: StructuredOutputRecovery | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ):
        self.writer = writer
        self.client_factory = client_factory
        self.recovery = recovery or StructuredOutputRecovery()
        self.max_attempts = max_attempts
        self.max_output_tokens = max_output_tokens

    def run_single(
        self,
        problem: Problem,
        model_config: ModelConfig,
        on_status: Callable[[str], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunResult:
        validate_env_for_model(model_config)
        client = self.client_factory(model_config, cancel_event)
        timer = Timer()

        result = self.recovery.recover(
            build_user_prompt(problem),
            HLDOutput,
            client,
            self.max_attempts,
            system_prompt=SYSTEM_PROMPT,
            max_output_tokens=self.max_output_tokens,
            cancel_event=cancel_event,
            on_status=on_status,
        )

        output: HLDOutput = result.data.model_copy(update={
            "data_flow": sanitize_mermaid(result.data.data_flow),
            "architecture_diagram": sanitize_mermaid(result.data.architecture_diagram),
        })
        meta = RunMeta(
            problem=problem.key,
            model=model_config.id,
            provider=model_config.provider,
            timestamp=_utc_timestamp(),
            duration_ms=timer.elapsed(),
            attempts=result.attempts,
            constrained_output=result.via_constrained_path,
            usage=getattr(client, "last_usage", None) or None,
        )
        return RunResult(meta=meta, output=output)

    def run_benchmark(
        self,
        problems: List[Problem],
        models: List[ModelConfig],
        cancel_event: Optional[threading.Event] = None,
    ) -> BenchmarkSummary:
        total = len(problems) * len(models)
        completed = 0
        failed = 0

        self.color_print(
            f"Starting benchmark: {len(problems)} problem(s) x {len(models)} model(s) = {total} run(s)", "cyan"
        )
        self.color_print(f"Output directory: {self.writer.output_base}", "dim")

        for problem in problems:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Benchmark cancelled, remaining runs skipped")
                break
            self.color_print(f"Problem: {problem.title} ({problem.key})", "cyan")
            for model in models:
                if cancel_event is not None and cancel_event.is_set():
                    break

                def on_status(msg, _name=model.display_name):
                    self.color_print(f"  {_name}: {msg}", "yellow")

                timer = Timer()
                try:
                    result = self.run_single(problem, model, on_status=on_status, cancel_event=cancel_event)
                    run_dir = self.writer.write_run_result(result)
                    self.color_print(
                        f"  {model.display_name}: done in {timer.display()} -> {run_dir}", "green"
                    )
                    completed += 1
                except Exception as e:
                    logger.exception(f"Run {problem.key} / {model.id} failed")
                    self.color_print(f"  {model.display_name}: failed: {e}", "red")
                    failed += 1

        self.color_print("-" * 50, "dim")
        self.color_print(f"Completed: {completed}/{total}", "green")
        if failed > 0:
            self.color_print(f"Failed: {failed}/{total}", "red")
        return BenchmarkSummary(total=total, completed=completed, failed=failed)
