#!/usr/bin/env python3
"""Preview exit decisions for the saved ledger without placing trades."""
import argparse
import logging
import sys

from core.exceptions import ConfigInvalid, DataError, DataUnavailable
from core.exit_policy import evaluate
from core.market_data import DexToolsProvider
from core.models import resolve_fraction
from infra.state_store import StateStore
from tools.config_validator import load_app_config, load_policy

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def preview(config_dir: str = "config") -> int:
    """Print the action each open position would get right now."""
    policy = load_policy(config_dir).exits
    app_config = load_app_config(config_dir)
    if not app_config.state.file:
        logger.error("state.file is not configured; nothing to preview")
        return 1

    records, _ = StateStore(app_config.state.file).load_ledger()
    provider = DexToolsProvider.from_config(app_config.market_data.model_dump())

    print("\n" + "=" * 80)
    print("EXIT PREVIEW")
    print("=" * 80 + "\n")

    for record in records:
        label = f"{record.account}/{record.asset}"
        try:
            snapshot = provider.fetch(record.asset)
        except DataUnavailable as e:
            print(f"{label:<50} NO DATA ({e})")
            continue
        try:
            action = evaluate(record, snapshot, policy)
        except DataError as e:
            print(f"{label:<50} FLAGGED ({e})")
            continue
        if action is None:
            print(f"{label:<50} hold (price {snapshot.price}, liquidated {record.liquidated_fraction})")
        else:
            print(f"{label:<50} {action.reason.upper()} sell {resolve_fraction(action, record)}")

    print(f"\n{len(records)} open position(s)")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config-dir", default="config")
    args = parser.parse_args()
    try:
        return preview(args.config_dir)
    except ConfigInvalid as e:
        for error in e.errors:
            logger.error(error)
        return 1


if __name__ == "__main__":
    sys.exit(main())
