"""Out-of-band retention sweep: drop quota records of identities idle too long.

Run it from cron (hourly is plenty):

python scripts/sweep_quota.py --max-idle-hours 24
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_gateway.config import load_config  # noqa: E402
from chat_gateway.quota import QuotaLedger  # noqa: E402
from chat_gateway.store import create_from_config  # noqa: E402

logger = logging.getLogger("chat_gateway.sweep")


def main() -> int:
    parser = argparse.ArgumentParser(description="Remove idle quota ledger records.")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config.")
    parser.add_argument(
        "--max-idle-hours",
        type=float,
        default=24.0,
        help="Records not seen for longer than this are removed (default: 24)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg = load_config(args.config)
    if str((cfg.get("store") or {}).get("backend", "file")).lower() == "memory":
        logger.error("The memory store backend has nothing to sweep outside a running server.")
        return 2
    ledger = QuotaLedger(create_from_config(cfg))
    removed = ledger.sweep(args.max_idle_hours * 3600)
    logger.info("Removed %d record(s)", removed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
