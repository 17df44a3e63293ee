import os
import sys

from dotenv import load_dotenv

from symptomcheck.core.app_factory import build_container
from symptomcheck.core.config import Settings
from symptomcheck.core.logging import configure_logging


def main() -> int:
    load_dotenv()
    configure_logging()

    limit = int(os.getenv("RECONCILE_SWEEP_LIMIT", "100"))
    container = build_container(Settings())
    try:
        result = container.reconciliation_service.reconcile_stale(limit=limit)
    finally:
        container.providers.close()
        container.persistence.close()

    print(f"Checked {result.checked}, reconciled {result.reconciled}, failed {result.failed}.")
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(main())
