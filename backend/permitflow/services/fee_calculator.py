"""
Fee calculation for a fee schedule configuration.

Pure functions: the same configuration and permit data always produce the
same breakdown, and nothing is read from or written to the database.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.fee_schedule import (
    FeeConfiguration,
    FeeCondition,
    AdditionalFee,
    CalculationType,
    AdditionalFeeCalculation,
    ConditionOperator,
)


class CalculatedAdditionalFee(BaseModel):
    name: str
    type: str
    amount: float
    is_optional: bool = False
    description: Optional[str] = None


class BreakdownLine(BaseModel):
    description: str
    amount: float


class FeeCalculation(BaseModel):
    base_fee: float
    additional_fees: List[CalculatedAdditionalFee] = Field(default_factory=list)
    total_fee: float
    breakdown: List[BreakdownLine] = Field(default_factory=list)


def _money(value: float) -> float:
    return round(value, 2)


def _number(permit_data: Dict[str, Any], key: str) -> float:
    value = permit_data.get(key)
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _tiered_amount(config: FeeConfiguration, value: float, breakdown: List[BreakdownLine]) -> float:
    """Add every bracket the value reaches; brackets are cumulative"""
    total = config.base_amount
    for tier in sorted(config.tiers, key=lambda t: t.min_value):
        if value < tier.min_value:
            continue
        upper = tier.max_value if tier.max_value is not None else value
        applicable = min(value, upper) - tier.min_value
        if applicable > 0:
            tier_fee = tier.flat_amount + applicable * tier.rate
            total += tier_fee
            label = f"{tier.min_value:,.0f}+" if tier.max_value is None else f"{tier.min_value:,.0f}-{tier.max_value:,.0f}"
            breakdown.append(BreakdownLine(description=f"Tier {label}", amount=_money(tier_fee)))
    return total


def calculate_base_fee(config: FeeConfiguration, permit_data: Dict[str, Any], breakdown: List[BreakdownLine]) -> float:
    """Base fee by calculation type, clamped to the configured minimum then maximum"""
    calculation = config.calculation_type
    if calculation == CalculationType.PER_SQFT:
        square_footage = _number(permit_data, "square_footage")
        base_fee = config.base_amount + square_footage * config.per_sqft_rate
        breakdown.append(BreakdownLine(
            description=f"Base fee ({square_footage:,.0f} sq ft x {config.per_sqft_rate})",
            amount=_money(base_fee)
        ))
    elif calculation == CalculationType.PERCENTAGE:
        estimated_value = _number(permit_data, "estimated_value")
        base_fee = config.base_amount + estimated_value * (config.percentage_rate / 100)
        breakdown.append(BreakdownLine(
            description=f"Base fee ({config.percentage_rate}% of {estimated_value:,.2f})",
            amount=_money(base_fee)
        ))
    elif calculation == CalculationType.TIERED:
        if config.base_amount:
            breakdown.append(BreakdownLine(description="Base amount", amount=_money(config.base_amount)))
        base_fee = _tiered_amount(config, _number(permit_data, "estimated_value"), breakdown)
    else:
        # flat, and custom which has no formula evaluator
        base_fee = config.base_amount
        breakdown.append(BreakdownLine(description="Base fee", amount=_money(base_fee)))

    if config.minimum_fee and base_fee < config.minimum_fee:
        base_fee = config.minimum_fee
        breakdown.append(BreakdownLine(description="Minimum fee applied", amount=_money(base_fee)))

    if config.maximum_fee and base_fee > config.maximum_fee:
        base_fee = config.maximum_fee
        breakdown.append(BreakdownLine(description="Maximum fee cap applied", amount=_money(base_fee)))

    return base_fee


def condition_applies(condition: Optional[FeeCondition], permit_data: Dict[str, Any]) -> bool:
    """No condition means the fee always applies; a missing field never satisfies one"""
    if condition is None:
        return True

    actual = permit_data.get(condition.field)
    if actual is None:
        return False

    expected = condition.value
    try:
        actual_cmp, expected_cmp = float(actual), float(expected)
    except (TypeError, ValueError):
        actual_cmp, expected_cmp = actual, expected

    operator = condition.operator
    try:
        if operator == ConditionOperator.GT:
            return actual_cmp > expected_cmp
        if operator == ConditionOperator.GTE:
            return actual_cmp >= expected_cmp
        if operator == ConditionOperator.LT:
            return actual_cmp < expected_cmp
        if operator == ConditionOperator.LTE:
            return actual_cmp <= expected_cmp
        return actual_cmp == expected_cmp
    except TypeError:
        return False


def additional_fee_amount(fee: AdditionalFee, base_fee: float, permit_data: Dict[str, Any]) -> float:
    calculation = fee.calculation_type
    if calculation == AdditionalFeeCalculation.PERCENTAGE_OF_BASE:
        return base_fee * (fee.amount / 100)
    if calculation == AdditionalFeeCalculation.PER_SQFT:
        return _number(permit_data, "square_footage") * fee.amount
    if calculation == AdditionalFeeCalculation.PER_UNIT:
        return (_number(permit_data, "units") or 1) * fee.amount
    return fee.amount


def calculate_fees(config: FeeConfiguration, permit_data: Dict[str, Any]) -> FeeCalculation:
    """
    Compute the fee breakdown for a permit.

    Args:
        config: Fee configuration of the schedule in force
        permit_data: Permit values the configuration reads
            (``estimated_value``, ``square_footage``, ``units`` and any field
            referenced by an additional fee condition)

    Returns:
        FeeCalculation with the clamped base fee, every applicable additional
        fee, and a total that leaves out optional fees
    """
    breakdown: List[BreakdownLine] = []
    base_fee = calculate_base_fee(config, permit_data, breakdown)

    additional: List[CalculatedAdditionalFee] = []
    required_total = 0.0
    for fee in config.additional_fees:
        if not condition_applies(fee.applies_when, permit_data):
            continue

        amount = _money(additional_fee_amount(fee, base_fee, permit_data))
        additional.append(CalculatedAdditionalFee(
            name=fee.name,
            type=fee.type.value,
            amount=amount,
            is_optional=fee.is_optional,
            description=fee.description,
        ))
        if not fee.is_optional:
            required_total += amount
            breakdown.append(BreakdownLine(description=fee.name, amount=amount))

    return FeeCalculation(
        base_fee=_money(base_fee),
        additional_fees=additional,
        total_fee=_money(base_fee + required_total),
        breakdown=breakdown,
    )
