from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any
from uuid import uuid4

from platformcore.domain.models import Transaction
from platformcore.services.workflows.engine import (
    BehaviorContext,
    BehaviorResult,
    RuntimeContext,
    default_registry,
    is_dry_run,
)


logger = logging.getLogger(__name__)

BEHAVIOR_TYPE = "calculate_pricing"


class PricingInputError(ValueError):
    """Line items or discount settings could not be interpreted."""


@dataclass(frozen=True)
class LineItem:
    product_id: str | None
    name: str | None
    unit_price: int
    quantity: int
    tax_rate: Decimal
    raw_rate: int | float

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class TaxGroup:
    rate: int | float
    subtotal: int
    discount: int
    taxable: int
    tax: int


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: int
    discount: int
    tax: int
    total: int
    currency: str
    line_items: list[LineItem]
    groups: list[TaxGroup]
    discount_code: str | None


def round_half_away(value: Decimal) -> int:
    # Money rounds half away from zero, never banker's rounding.
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _as_decimal(value: Any, *, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise PricingInputError(f"{field_name} must be a number")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise PricingInputError(f"{field_name} must be a number") from exc
    if not result.is_finite() or result < 0:
        raise PricingInputError(f"{field_name} must be a non-negative number")
    return result


def _as_int(value: Any, *, field_name: str, minimum: int) -> int:
    if isinstance(value, bool):
        raise PricingInputError(f"{field_name} must be an integer")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        raise PricingInputError(f"{field_name} must be an integer")
    if number < minimum:
        raise PricingInputError(f"{field_name} must be at least {minimum}")
    return number


def parse_line_items(raw_items: list[dict[str, Any]], *, default_tax_rate: Any = 0) -> list[LineItem]:
    items: list[LineItem] = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise PricingInputError(f"line_items[{index}] must be an object")
        raw_rate = raw.get("tax_rate", default_tax_rate)
        rate = _as_decimal(raw_rate, field_name=f"line_items[{index}].tax_rate")
        items.append(
            LineItem(
                product_id=raw.get("product_id"),
                name=raw.get("name"),
                unit_price=_as_int(raw.get("unit_price"), field_name=f"line_items[{index}].unit_price", minimum=0),
                quantity=_as_int(raw.get("quantity", 1), field_name=f"line_items[{index}].quantity", minimum=1),
                tax_rate=rate,
                raw_rate=int(rate) if rate == rate.to_integral_value() else float(rate),
            )
        )
    return items


def resolve_discount(
    subtotal: int,
    *,
    discount_percent: Any = None,
    discount_amount: Any = None,
    discount_code: str | None = None,
    discount_codes: dict[str, Any] | None = None,
) -> tuple[int, str | None]:
    """Return the discount in cents and the code that produced it, if any.

    A known discount code wins over the flat percent, which wins over the
    flat amount. Amount discounts are capped at the subtotal.
    """
    if discount_code and discount_codes:
        entry = discount_codes.get(discount_code) or discount_codes.get(discount_code.upper())
        if isinstance(entry, dict):
            if entry.get("percent") is not None:
                discount_percent, discount_amount = entry["percent"], None
            elif entry.get("amount") is not None:
                discount_percent, discount_amount = None, entry["amount"]
            applied_code: str | None = discount_code.upper()
        else:
            applied_code = None
    else:
        applied_code = None
    if discount_percent is not None:
        percent = _as_decimal(discount_percent, field_name="discount_percent")
        if percent > 100:
            raise PricingInputError("discount_percent must be at most 100")
        return round_half_away(Decimal(subtotal) * percent / 100), applied_code
    if discount_amount is not None:
        amount = _as_int(discount_amount, field_name="discount_amount", minimum=0)
        return min(amount, subtotal), applied_code
    return 0, None


def calculate_breakdown(
    line_items: list[LineItem],
    *,
    discount: int = 0,
    currency: str = "EUR",
    discount_code: str | None = None,
) -> PricingBreakdown:
    subtotal = sum(item.line_total for item in line_items)
    discount = max(0, min(discount, subtotal))
    grouped: dict[Decimal, list[LineItem]] = {}
    for item in line_items:
        grouped.setdefault(item.tax_rate.normalize(), []).append(item)

    groups: list[TaxGroup] = []
    for rate, members in grouped.items():
        group_subtotal = sum(item.line_total for item in members)
        if subtotal:
            # Spread the discount in proportion to each rate group's share of the cart.
            group_discount = round_half_away(Decimal(group_subtotal) * discount / subtotal)
        else:
            group_discount = 0
        taxable = group_subtotal - group_discount
        groups.append(
            TaxGroup(
                rate=members[0].raw_rate,
                subtotal=group_subtotal,
                discount=group_discount,
                taxable=taxable,
                tax=round_half_away(Decimal(taxable) * rate / 100),
            )
        )
    tax = sum(group.tax for group in groups)
    return PricingBreakdown(
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
        currency=currency,
        line_items=line_items,
        groups=groups,
        discount_code=discount_code,
    )


def _line_items_source(config: dict[str, Any], runtime: RuntimeContext) -> list[dict[str, Any]] | None:
    if config.get("line_items"):
        return config["line_items"]
    if runtime.inputs.get("line_items"):
        return runtime.inputs["line_items"]
    cart = runtime.inputs.get("cart")
    if isinstance(cart, dict) and cart.get("line_items"):
        return cart["line_items"]
    return None


def _serialize(breakdown: PricingBreakdown) -> dict[str, Any]:
    return {
        "subtotal": breakdown.subtotal,
        "discount": breakdown.discount,
        "tax": breakdown.tax,
        "total": breakdown.total,
        "currency": breakdown.currency,
        "discount_code": breakdown.discount_code,
        "line_items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "unit_price": item.unit_price,
                "quantity": item.quantity,
                "tax_rate": item.raw_rate,
                "line_total": item.line_total,
            }
            for item in breakdown.line_items
        ],
        "tax_breakdown": [
            {
                "rate": group.rate,
                "subtotal": group.subtotal,
                "discount": group.discount,
                "taxable": group.taxable,
                "tax": group.tax,
            }
            for group in breakdown.groups
        ],
    }


@default_registry.behavior(BEHAVIOR_TYPE, "pricing")
async def calculate_pricing(
    ctx: BehaviorContext,
    organization_id: str,
    config: dict[str, Any],
    runtime: RuntimeContext,
) -> BehaviorResult:
    raw_items = _line_items_source(config, runtime)
    if not raw_items:
        return BehaviorResult(
            behavior_type=BEHAVIOR_TYPE,
            success=False,
            error="No line items found in configuration or inputs",
            data={"code": "missing_line_items"},
        )
    try:
        items = parse_line_items(raw_items, default_tax_rate=config.get("default_tax_rate", 0))
        subtotal = sum(item.line_total for item in items)
        discount, applied_code = resolve_discount(
            subtotal,
            discount_percent=config.get("discount_percent"),
            discount_amount=config.get("discount_amount"),
            discount_code=runtime.inputs.get("discount_code") or config.get("discount_code"),
            discount_codes=config.get("discount_codes"),
        )
    except PricingInputError as exc:
        return BehaviorResult(
            behavior_type=BEHAVIOR_TYPE,
            success=False,
            error=str(exc),
            data={"code": "invalid_pricing_input"},
        )

    breakdown = calculate_breakdown(
        items,
        discount=discount,
        currency=str(config.get("currency") or "EUR"),
        discount_code=applied_code,
    )
    data = _serialize(breakdown)
    dry_run = is_dry_run(config, runtime)
    data["dry_run"] = dry_run
    if dry_run:
        logger.info(
            "pricing_calculated (dry run) organization_id=%s subtotal=%s discount=%s tax=%s total=%s",
            organization_id,
            breakdown.subtotal,
            breakdown.discount,
            breakdown.tax,
            breakdown.total,
        )
        data["transaction_id"] = None
        return BehaviorResult(
            behavior_type=BEHAVIOR_TYPE,
            success=True,
            message=f"Total {breakdown.total} {breakdown.currency} (dry run)",
            data=data,
        )

    transaction = Transaction(
        id=uuid4().hex,
        organization_id=organization_id,
        workflow_id=runtime.workflow_id,
        subtotal=breakdown.subtotal,
        discount=breakdown.discount,
        tax=breakdown.tax,
        total=breakdown.total,
        currency=breakdown.currency,
        line_items=data["line_items"],
        tax_breakdown=data["tax_breakdown"],
    )
    ctx.session.add(transaction)
    await ctx.session.flush()
    data["transaction_id"] = transaction.id
    logger.info(
        "pricing_calculated organization_id=%s transaction_id=%s total=%s",
        organization_id,
        transaction.id,
        breakdown.total,
    )
    return BehaviorResult(
        behavior_type=BEHAVIOR_TYPE,
        success=True,
        message=f"Total {breakdown.total} {breakdown.currency}",
        data=data,
    )
