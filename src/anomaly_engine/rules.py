"""
Default rule detector.

Each rule is a predicate over one DataPoint that yields at most one finding.
Thresholds come from RuleConfig; the catalogue itself is fixed.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

import structlog

from .errors import EvalError, LoadError
from .interfaces import RuleDetector
from .models import DataPoint, RawFinding

logger = structlog.get_logger(__name__)


@dataclass
class RuleConfig:
    """Thresholds for the built-in rules"""

    min_days_of_supply: float = 7.0
    price_spike_ratio: float = 1.5  # current / average market price
    max_supplier_delay_days: float = 7.0
    decline_to_consumption_ratio: float = 2.0  # decline rate vs expected daily consumption
    disabled_rules: tuple[str, ...] = ()


@dataclass
class Rule:
    """A named predicate producing a finding when it fires"""

    name: str
    severity: str
    check: Callable[[DataPoint], Optional[RawFinding]]


def _label(point: DataPoint) -> str:
    return point.medicine_name or point.medicine_id


class RuleEngine(RuleDetector):
    """Evaluates the supply rule catalogue against each data point"""

    def __init__(self, config: RuleConfig | None = None):
        self.config = config or RuleConfig()
        self.rules: list[Rule] = []

    def load_rules(self) -> None:
        self._validate()

        catalogue = [
            Rule("out_of_stock", "critical", self._out_of_stock),
            Rule("below_critical_threshold", "high", self._below_critical_threshold),
            Rule("low_days_of_supply", "high", self._low_days_of_supply),
            Rule("price_spike", "high", self._price_spike),
            Rule("supplier_delay", "medium", self._supplier_delay),
            Rule("rapid_stock_decline", "medium", self._rapid_stock_decline),
        ]
        rules = [rule for rule in catalogue if rule.name not in self.config.disabled_rules]
        if not rules:
            raise LoadError("Every rule is disabled; disable the rule engine instead")
        self.rules = rules

        logger.info(
            "Rules loaded",
            count=len(self.rules),
            rules=[rule.name for rule in self.rules],
        )

    def _validate(self):
        checks = {
            "min_days_of_supply": self.config.min_days_of_supply,
            "price_spike_ratio": self.config.price_spike_ratio,
            "max_supplier_delay_days": self.config.max_supplier_delay_days,
            "decline_to_consumption_ratio": self.config.decline_to_consumption_ratio,
        }
        invalid = {name: value for name, value in checks.items() if value <= 0}
        if invalid:
            raise LoadError(f"Rule thresholds must be positive: {invalid}")
        if self.config.price_spike_ratio <= 1.0:
            raise LoadError(
                f"price_spike_ratio must be above 1.0, got {self.config.price_spike_ratio}"
            )

    def evaluate(self, data_point: DataPoint) -> list[RawFinding]:
        if not self.rules:
            raise EvalError("No rules loaded")

        findings = []
        for rule in self.rules:
            try:
                finding = rule.check(data_point)
            except Exception as e:
                raise EvalError(
                    f"Rule '{rule.name}' failed for medicine {data_point.medicine_id}: {e}"
                ) from e

            if finding is not None:
                finding.severity = finding.severity or rule.severity
                finding.type = finding.type or rule.name
                finding.causes_of_shortages = data_point.causes_of_shortage
                finding.data_point = data_point
                findings.append(finding)

        if findings:
            logger.debug(
                "Rules fired",
                medicine_id=data_point.medicine_id,
                rules=[f.type for f in findings],
            )
        return findings

    # ========================================
    # Rule predicates
    # ========================================

    def _out_of_stock(self, point: DataPoint) -> Optional[RawFinding]:
        if point.current_stock > 0:
            return None
        location = point.location or "unknown location"
        return RawFinding(
            message=f"{_label(point)} is out of stock",
            description=f"No stock left for {_label(point)} at {location}.",
            details={"currentStock": point.current_stock, "location": point.location},
        )

    def _below_critical_threshold(self, point: DataPoint) -> Optional[RawFinding]:
        if point.current_stock <= 0 or point.critical_threshold <= 0:
            return None
        if point.current_stock > point.critical_threshold:
            return None
        return RawFinding(
            message=f"{_label(point)} stock below critical threshold",
            details={
                "currentStock": point.current_stock,
                "criticalThreshold": point.critical_threshold,
            },
        )

    def _low_days_of_supply(self, point: DataPoint) -> Optional[RawFinding]:
        days = point.days_of_supply
        if days is None or point.current_stock <= 0:
            return None
        if days >= self.config.min_days_of_supply:
            return None
        return RawFinding(
            message=f"{_label(point)} will run out in {days:.1f} days",
            details={
                "daysOfSupply": round(days, 2),
                "dailyConsumption": point.daily_consumption,
                "projectedStockoutDate": point.projected_stockout_date,
            },
        )

    def _price_spike(self, point: DataPoint) -> Optional[RawFinding]:
        average = point.average_market_price
        if not average or average <= 0:
            return None
        ratio = point.current_price / average
        if ratio < self.config.price_spike_ratio:
            return None
        return RawFinding(
            message=f"{_label(point)} priced {ratio:.1f}x the market average",
            details={
                "currentPrice": point.current_price,
                "averageMarketPrice": average,
                "ratio": round(ratio, 3),
            },
        )

    def _supplier_delay(self, point: DataPoint) -> Optional[RawFinding]:
        if point.supplier_delay < self.config.max_supplier_delay_days:
            return None
        return RawFinding(
            message=f"Supplier {point.supplier or 'unknown'} delayed {point.supplier_delay:g} days",
            details={"supplier": point.supplier, "supplierDelay": point.supplier_delay},
        )

    def _rapid_stock_decline(self, point: DataPoint) -> Optional[RawFinding]:
        rate = point.decline_rate
        if rate is None or rate <= 0 or point.daily_consumption <= 0:
            return None
        if rate < point.daily_consumption * self.config.decline_to_consumption_ratio:
            return None
        return RawFinding(
            message=f"{_label(point)} stock declining faster than expected",
            details={
                "declineRate": round(rate, 3),
                "dailyConsumption": point.daily_consumption,
            },
        )
