# bench_main.py
"""
Benchmark entry point.

Runs every problem in ./problems against every configured model and writes
one record directory per pair under ./output.

Everything is driven by the environment (.env / .env.local are loaded too):

  HLD_BENCH_PROBLEM         only run the problem with this key
  HLD_BENCH_MODEL           only run the model(s) with these ids (comma separated)
  HLD_BENCH_MODELS_CONFIG   models file to use instead of ./models.yaml / built-in defaults
  HLD_BENCH_LOG_LEVEL       DEBUG | INFO | WARNING ... (default INFO)
  HLD_BENCH_MAX_ATTEMPTS, HLD_BENCH_MAX_OUTPUT_TOKENS

Ctrl-C once: the run in progress is cancelled before its next request and the batch stops.
"""

import os
import sys
import signal
import logging
import threading

from dotenv import load_dotenv

load_dotenv()

from hld_bench.config import get_output_dir, get_problems_dir, load_models, load_problems
from hld_bench.runner import BenchmarkRunner
from hld_bench.writer import RunWriter


logging.basicConfig(
    level=os.getenv("HLD_BENCH_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("hld_bench")


def _select(items, wanted, attr):
    if not wanted:
        return items
    keys = {w.strip() for w in wanted.split(",") if w.strip()}
    return [i for i in items if getattr(i, attr) in keys]


def main() -> int:
    problems = _select(load_problems(get_problems_dir()), os.getenv("HLD_BENCH_PROBLEM"), "key")
    if not problems:
        logger.error(f"No problem matches HLD_BENCH_PROBLEM={os.getenv('HLD_BENCH_PROBLEM')}")
        return 1

    models = _select(load_models(os.getenv("HLD_BENCH_MODELS_CONFIG")), os.getenv("HLD_BENCH_MODEL"), "id")
    if not models:
        logger.error(f"No model matches HLD_BENCH_MODEL={os.getenv('HLD_BENCH_MODEL')}")
        return 1

    cancel_event = threading.Event()

    def _on_sigint(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Cancellation requested, stopping after the current request...")
        cancel_event.set()

    signal.signal(signal.SIGINT, _on_sigint)

    runner = BenchmarkRunner(RunWriter(get_output_dir()))
    summary = runner.run_benchmark(problems, models, cancel_event=cancel_event)
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
