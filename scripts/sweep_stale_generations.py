#!/usr/bin/env python3
"""Mark generations stuck in ``processing`` as failed.

Polling is driven by clients, so a record whose client went away never
reaches a terminal state on its own. Run this periodically (cron, Render job).
"""
from __future__ import annotations

import argparse
import logging
import os
from datetime import timedelta

from heroframe.config import get_settings
from heroframe.services.container import build_container


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--hours",
        type=float,
        default=settings.stale_after_hours,
        help="age after which a processing record counts as stale",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = build_container(settings)
    try:
        swept = services.orchestrator.sweep_stale(timedelta(hours=args.hours))
    finally:
        services.close()
    for record in swept:
        print(f"Failed stale generation {record.id} (job={record.job_id})")
    print(f"Swept {len(swept)} generation(s)")


if __name__ == "__main__":
    main()
