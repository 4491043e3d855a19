from __future__ import annotations

from arq.worker import run_worker

from platformcore.core.logging import configure_logging
from platformcore.workers.outbox_worker import WorkerSettings


def main() -> None:
    # Run the arq worker that drains outbox jobs and sweeps due retries.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
