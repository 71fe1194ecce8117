"""
Alternative Cloud Pricing Generator

Derives an alternative provider's price list from AWS pricing data and a compact
configuration of discount rules.

AWS data is grouped by family:
    {"m6i": {"m6i.xlarge": {"spec": {"core": 4, "memory": 16},
                            "regions": {"us-east-1": {"ondemand": 0.192, ...}}}}}

Configuration:
    supported     instances (patterns: "*", "m6i.*", exact), regions, tiers
    tier_mapping  alternative tier -> AWS tier key
    pricing       default, by_tier, by_region ("us-*" prefixes or exact regions),
                  by_instance_family, fixed_prices ("type|region|tier": price)
    naming        optional instance and region display names

Discount values are percentage differences: -20 means 20% cheaper than AWS.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cloud_cost_shared.platform_manager import create_logger

from cloud_cost_mcp.tools.calculator import round_half_up


def matches_pattern(instance_type: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if pattern == "*":
            return True
        if pattern.endswith(".*") and instance_type.startswith(pattern[:-2] + "."):
            return True
        if pattern == instance_type:
            return True
    return False


def calculate_price(
    aws_price: float,
    instance_type: str,
    region: str,
    tier: str,
    pricing_rules: dict[str, Any],
) -> float:
    """Apply fixed overrides, then tier/default discount plus region and family adjustments."""
    fixed_prices = pricing_rules.get("fixed_prices") or {}
    fixed_key = f"{instance_type}|{region}|{tier}"
    if fixed_key in fixed_prices:
        return fixed_prices[fixed_key]

    # Tier discount replaces the default
    by_tier = pricing_rules.get("by_tier") or {}
    discount = by_tier.get(tier, pricing_rules.get("default", 0))

    # Region adjustment is additive; a prefix rule ("us-*") wins over an exact region
    by_region = pricing_rules.get("by_region") or {}
    region_prefix = region.split("-")[0] + "-*"
    if region_prefix in by_region:
        discount += by_region[region_prefix]
    elif region in by_region:
        discount += by_region[region]

    family = instance_type.split(".")[0]
    by_family = pricing_rules.get("by_instance_family") or {}
    discount += by_family.get(family, 0)

    return aws_price * (1 + discount / 100)


def generate(aws_data: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    supported = config.get("supported") or {}
    patterns = supported.get("instances") or ["*"]
    regions = supported.get("regions") or []
    tiers = supported.get("tiers") or ["ondemand"]
    tier_mapping = config.get("tier_mapping") or {}
    pricing_rules = config.get("pricing") or {}
    naming = config.get("naming") or {}

    result: dict[str, Any] = {
        "metadata": {
            "provider": "alternative_cloud",
            "generated_from": "aws_pricing",
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "config_summary": {
                "instances": patterns,
                "regions": regions,
                "tiers": tiers,
                "base_discount": f"{pricing_rules.get('default', 0)}%",
            },
        },
        "instances": {},
    }

    for family_instances in aws_data.values():
        for instance_type, instance_data in family_instances.items():
            if not matches_pattern(instance_type, patterns):
                continue

            spec = instance_data.get("spec") or {}
            entry: dict[str, Any] = {
                "alternative_name": (naming.get("instances") or {}).get(instance_type, instance_type),
                "specs": {"vcpu": spec.get("core"), "memory_gb": spec.get("memory")},
                "regions": {},
            }

            aws_regions = instance_data.get("regions") or {}
            for region in regions:
                # Skip regions AWS does not offer this instance in
                if region not in aws_regions:
                    continue

                region_entry: dict[str, Any] = {
                    "alternative_region": (naming.get("regions") or {}).get(region, region),
                    "aws_pricing": {},
                    "alternative_pricing": {},
                }
                for tier in tiers:
                    aws_price = aws_regions[region].get(tier_mapping.get(tier, tier))
                    if aws_price is None:
                        continue
                    alt_price = calculate_price(aws_price, instance_type, region, tier, pricing_rules)
                    region_entry["aws_pricing"][tier] = round_half_up(aws_price, 4)
                    region_entry["alternative_pricing"][tier] = round_half_up(alt_price, 4)

                entry["regions"][region] = region_entry

            result["instances"][instance_type] = entry

    return result


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments for the pricing generator.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Generate alternative cloud pricing from AWS pricing data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--aws-data", "-a", required=True, help="Path to AWS pricing JSON file")
    parser.add_argument("--config", "-c", required=True, help="Path to generator configuration JSON file")
    parser.add_argument("--output", "-o", help="Output file (default: stdout)")
    parser.add_argument(
        "--log-level",
        "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Set the logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    logger = create_logger(logger_name="generate-pricing", log_level=args.log_level)

    try:
        aws_data = json.loads(Path(args.aws_data).read_text(encoding="utf-8"))
        config = json.loads(Path(args.config).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to read input: {e}")
        return 1

    output = generate(aws_data, config)
    logger.info(f"Generated pricing for {len(output['instances'])} instance types")

    text = json.dumps(output, indent=2)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        logger.info(f"Wrote {args.output}")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
