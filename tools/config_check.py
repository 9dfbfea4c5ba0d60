"""Configuration validation tooling for the exit manager.

Usage:
    python -m tools.config_check                     # validate config/
    python -m tools.config_check --config-dir other/
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from tools.config_validator import load_policy, validate_all_configs


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate policy.yaml and app.yaml")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    errors = validate_all_configs(args.config_dir)
    if errors:
        print(f"❌ {len(errors)} configuration error(s):")
        for idx, error in enumerate(errors, start=1):
            print(f"{idx:>2}. {error}")
        return 1

    exits = load_policy(args.config_dir).exits
    print("✅ Configuration valid")
    print("   Staged exits:")
    for target, fraction in zip(exits.price_targets, exits.sell_fractions):
        print(f"     {target}x entry → sell {fraction * 100}% of original size")
    print(f"   Stop loss: {exits.stop_loss_ratio}x | Min profit: {exits.min_profit_ratio}x | "
          f"Volume spike: {exits.volume_spike_multiplier}x | Market cap: {exits.market_cap_target} | "
          f"Max hold: {exits.max_hold_hours}h")
    return 0


if __name__ == "__main__":
    sys.exit(main())
