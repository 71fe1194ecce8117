from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_PRICING_PATH = Path(__file__).resolve().parent.parent / "data" / "pricing.json"
REQUIRED_KEYS = ("aws_instances", "alternative_cloud", "regions", "instance_mapping")


class PricingDataError(Exception):
    """The pricing table could not be read or is missing required sections."""


@dataclass(frozen=True)
class PricingTable:
    """Read-only view over the pricing data file."""

    metadata: dict[str, Any]
    aws_instances: dict[str, dict[str, Any]]
    alternative_cloud: dict[str, dict[str, Any]]
    regions: dict[str, dict[str, Any]]
    instance_mapping: dict[str, str]

    @classmethod
    def load(cls, path: str | Path | None = None) -> PricingTable:
        """
        Load and validate the pricing table.

        Raises:
            PricingDataError: If the file is unreadable, not JSON, or lacks a required key.
        """
        file_path = Path(path) if path else DEFAULT_PRICING_PATH
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise PricingDataError(f"Failed to load pricing data: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> PricingTable:
        if not data or not isinstance(data, dict):
            raise PricingDataError("Failed to load pricing data: Pricing data is empty")
        for key in REQUIRED_KEYS:
            if key not in data:
                raise PricingDataError(
                    f"Failed to load pricing data: Missing required key in pricing data: {key}"
                )
        return cls(
            metadata=data.get("metadata", {}),
            aws_instances=data["aws_instances"],
            alternative_cloud=data["alternative_cloud"],
            regions=data["regions"],
            instance_mapping=data["instance_mapping"],
        )

    def get_aws_price(self, instance_type: str, region: str) -> float | None:
        instance = self.aws_instances.get(instance_type)
        if not instance:
            return None
        return instance.get("pricing", {}).get(region)

    def get_alternative_price(self, aws_instance_type: str) -> float | None:
        alternative_type = self.instance_mapping.get(aws_instance_type)
        if not alternative_type:
            return None
        alternative = self.alternative_cloud.get(alternative_type)
        if not alternative:
            return None
        return alternative.get("hourly_rate")

    def get_instance_specs(self, instance_type: str) -> dict[str, Any] | None:
        instance = self.aws_instances.get(instance_type)
        return instance.get("specs") if instance else None

    def list_supported_instances(self) -> list[str]:
        return list(self.aws_instances)

    def list_supported_regions(self) -> list[str]:
        return list(self.regions)

    def is_instance_supported(self, instance_type: Any) -> bool:
        return isinstance(instance_type, str) and instance_type in self.aws_instances

    def is_region_supported(self, region: Any) -> bool:
        return isinstance(region, str) and region in self.regions
