"""Run the expiry sweeper as a standalone process.

Only database sweeps run here; rate-limit counters belong to the API
process and are swept by its embedded worker.
"""

import logging
import time

from clinic_auth.services.cleanup_worker import CleanupWorker, default_tasks


def build_worker() -> CleanupWorker:
    return CleanupWorker(default_tasks(include_counters=False))


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    worker = build_worker()
    worker.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        worker.stop()


if __name__ == "__main__":
    main()
