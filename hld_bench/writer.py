# hld_bench/writer.py
import json
import logging
import os
import re
from pathlib import Path

from hld_bench.entities import OUTPUT_VERSION, RunResult
from hld_bench.mermaid_sanitizer import sanitize_mermaid


logger = logging.getLogger("hld_bench")

RAW_RESPONSE_FILE = "raw-response.json"
META_FILE = "meta.json"
ARCHITECTURE_DIAGRAM_FILE = "architecture.mmd"
DATA_FLOW_DIAGRAM_FILE = "data-flow.mmd"


class RunWriter:
    """
    Filesystem store for run records, one directory per problem/model pair:

        <output_base>/<problem-key>-<model-id>/
            raw-response.json   validated HLD record (wire names) plus its format version
            meta.json           run metadata
            architecture.mmd    sanitized diagram sources
            data-flow.mmd

    Records are write-once: a directory that already holds meta.json is never overwritten.
    """

    def __init__(self, output_base: str | os.PathLike):
        self.output_base = Path(output_base)

    def get_run_dir(self, problem_key: str, model_id: str) -> Path:
        safe_name = re.sub(r"[^a-zA-Z0-9._-]", "-", model_id)
        return self.output_base / f"{problem_key}-{safe_name}"

    def _write_text(self, path: Path, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    def write_run_result(self, result: RunResult) -> Path:
        run_dir = self.get_run_dir(result.meta.problem, result.meta.model)
        if (run_dir / META_FILE).exists():
            raise FileExistsError(f"Run record already exists: {run_dir}")
        run_dir.mkdir(parents=True, exist_ok=True)

        self._write_text(run_dir / RAW_RESPONSE_FILE, json.dumps({"version": OUTPUT_VERSION, **result.output.to_wire()}, indent=2, ensure_ascii=False))

        if result.output.architecture_diagram:
            self._write_text(run_dir / ARCHITECTURE_DIAGRAM_FILE, sanitize_mermaid(result.output.architecture_diagram))
        if result.output.data_flow:
            self._write_text(run_dir / DATA_FLOW_DIAGRAM_FILE, sanitize_mermaid(result.output.data_flow))

        # meta.json last: its presence marks the record complete
        self._write_text(run_dir / META_FILE, json.dumps(result.meta.to_wire(), indent=2, ensure_ascii=False))
        logger.debug(f"Run record written to {run_dir}")
        return run_dir
