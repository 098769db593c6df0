from __future__ import annotations

from arq.worker import run_worker

from esgflow.core.logging import configure_logging
from esgflow.workers.sync_worker import WorkerSettings


def main() -> None:
    # Equivalent to `arq esgflow.workers.sync_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
