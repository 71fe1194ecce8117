"""
Cost calculation engine for cloud pricing comparisons.
"""

from __future__ import annotations

import math
from typing import Any

from cloud_cost_mcp.tools.pricing_loader import PricingTable

DEFAULT_HOURS_PER_MONTH = 730  # 24/7 operation
MAX_HOURS_PER_MONTH = 744  # 31 days


class ToolInputError(ValueError):
    """Arguments passed to a tool failed validation."""


def round_half_up(value: float, decimals: int) -> float:
    # Half-up rounding, so 0.125 -> 0.13 rather than banker's 0.12
    factor = 10**decimals
    return math.floor(value * factor + 0.5) / factor


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


class CostCalculator:
    def __init__(self, table: PricingTable) -> None:
        self.table = table

    def calculate_instance_savings(self, instances: Any) -> dict[str, Any]:
        """
        Compare the monthly cost of AWS instances with their alternative cloud equivalents.

        Args:
            instances: Sequence of {type, quantity, region, hours_per_month (default 730)}.

        Returns:
            {"comparison": {...totals, "breakdown": [...]}, "recommendations": [...]}

        Raises:
            ToolInputError: If the list is empty or any configuration is invalid. Every
                configuration is validated before any cost is computed.
        """
        if not instances or not isinstance(instances, list):
            raise ToolInputError("At least one instance configuration is required")

        configs = [self._normalize(item) for item in instances]
        for config in configs:
            self._validate(config)

        breakdowns = []
        total_aws = 0.0
        total_alternative = 0.0
        for config in configs:
            breakdown, aws_monthly, alternative_monthly = self._breakdown(config)
            breakdowns.append(breakdown)
            total_aws += aws_monthly
            total_alternative += alternative_monthly

        total_savings = total_aws - total_alternative
        total_savings_pct = (total_savings / total_aws) * 100 if total_aws > 0 else 0.0

        return {
            "comparison": {
                "aws_monthly_cost": round_half_up(total_aws, 2),
                "alternative_monthly_cost": round_half_up(total_alternative, 2),
                "savings_amount": round_half_up(total_savings, 2),
                "savings_percentage": round_half_up(total_savings_pct, 2),
                "breakdown": breakdowns,
            },
            "recommendations": self._recommendations(total_aws, total_alternative, total_savings_pct),
        }

    def list_supported_instances(self) -> dict[str, Any]:
        return {
            "aws_instances": self.table.list_supported_instances(),
            "regions": self.table.list_supported_regions(),
            "metadata": self.table.metadata,
        }

    def _normalize(self, item: Any) -> dict[str, Any]:
        if not isinstance(item, dict):
            raise ToolInputError("Each instance configuration must be an object")
        hours = item.get("hours_per_month")
        return {
            "type": item.get("type"),
            "quantity": item.get("quantity"),
            "region": item.get("region"),
            "hours_per_month": DEFAULT_HOURS_PER_MONTH if hours is None else hours,
        }

    def _validate(self, config: dict[str, Any]) -> None:
        if not self.table.is_instance_supported(config["type"]):
            supported = ", ".join(self.table.list_supported_instances())
            raise ToolInputError(
                f"Unsupported instance type: {config['type']}. Supported types: {supported}"
            )

        if not self.table.is_region_supported(config["region"]):
            supported = ", ".join(self.table.list_supported_regions())
            raise ToolInputError(
                f"Unsupported region: {config['region']}. Supported regions: {supported}"
            )

        quantity = config["quantity"]
        if not _is_number(quantity) or quantity <= 0:
            raise ToolInputError(f"Quantity must be positive, got {quantity}")

        hours = config["hours_per_month"]
        if not _is_number(hours) or hours <= 0 or hours > MAX_HOURS_PER_MONTH:
            raise ToolInputError(
                f"Hours per month must be between 1 and {MAX_HOURS_PER_MONTH}, got {hours}"
            )

    def _breakdown(self, config: dict[str, Any]) -> tuple[dict[str, Any], float, float]:
        """Returns the rounded breakdown entry and the unrounded monthly costs."""
        instance_type = config["type"]
        region = config["region"]
        quantity = config["quantity"]
        hours = config["hours_per_month"]

        aws_hourly = self.table.get_aws_price(instance_type, region)
        alternative_hourly = self.table.get_alternative_price(instance_type)
        if aws_hourly is None:
            raise ToolInputError(f"Pricing not found for {instance_type} in {region}")
        if alternative_hourly is None:
            raise ToolInputError(f"Alternative pricing not found for {instance_type}")

        aws_monthly = aws_hourly * hours * quantity
        alternative_monthly = alternative_hourly * hours * quantity
        savings = aws_monthly - alternative_monthly
        savings_pct = (savings / aws_monthly) * 100 if aws_monthly > 0 else 0.0

        breakdown = {
            "instance_type": instance_type,
            "quantity": quantity,
            "region": region,
            "hours_per_month": hours,
            "aws_hourly_rate": round_half_up(aws_hourly, 4),
            "alternative_hourly_rate": round_half_up(alternative_hourly, 4),
            "aws_monthly_cost": round_half_up(aws_monthly, 2),
            "alternative_monthly_cost": round_half_up(alternative_monthly, 2),
            "savings_amount": round_half_up(savings, 2),
            "savings_percentage": round_half_up(savings_pct, 2),
        }
        return breakdown, aws_monthly, alternative_monthly

    def _recommendations(self, aws_cost: float, alternative_cost: float, savings_pct: float) -> list[str]:
        recommendations: list[str] = []

        if savings_pct > 0:
            annual_savings = round_half_up((aws_cost - alternative_cost) * 12, 2)
            recommendations.append(
                f"Switching to alternative cloud could save ${annual_savings:,} annually"
            )

            if savings_pct > 30:
                recommendations.append("High savings potential - consider migrating production workloads")
            elif savings_pct > 20:
                recommendations.append("Significant savings - ideal for dev/staging environments")
            else:
                recommendations.append("Moderate savings - good for non-critical workloads")

            if aws_cost > 1000:
                recommendations.append("Large infrastructure - consider phased migration approach")
        else:
            recommendations.append("Current AWS pricing is competitive for your configuration")

        return recommendations
