"""Server-side allow-list of one-time purchase packages."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from premium_ledger.settings import settings


class PurchaseValidationError(Exception):
    """Raised when a purchase does not match the allow-list.

    Attributes:
        reason: Human-readable description recorded on the transaction log
        violation_type: Short machine tag (``price_mismatch``, ``premium_discount_abuse``...)
    """

    def __init__(self, reason: str, violation_type: str = "price_mismatch"):
        super().__init__(reason)
        self.reason = reason
        self.violation_type = violation_type


@dataclass(frozen=True)
class Package:
    """An allow-listed package."""
    package_type: str
    item_type: str
    amount: int
    price: Decimal
    price_setting: str = ""

    @property
    def stripe_price_id(self) -> str | None:
        return getattr(settings, self.price_setting, None) if self.price_setting else None


LETTER_CREDITS = "letter-credits"

PACKAGE_CATALOG: dict[str, Package] = {
    "basic": Package("basic", "coins", 250, Decimal("2.99"), "stripe_price_basic_coins"),
    "popular": Package("popular", "coins", 750, Decimal("7.99"), "stripe_price_popular_coins"),
    "premium": Package("premium", "coins", 1500, Decimal("14.99"), "stripe_price_premium_coins"),
    "mega": Package("mega", "coins", 3500, Decimal("29.99"), "stripe_price_mega_coins"),
    "ultimate": Package("ultimate", "coins", 6000, Decimal("14.99"), "stripe_price_ultimate_coins"),
    LETTER_CREDITS: Package(LETTER_CREDITS, "credits", 1, Decimal("2.99"), "stripe_price_letter_credits"),
}


def parse_price(value: Decimal | float | str | None) -> Decimal | None:
    """Normalise a price to cents precision; None if missing or unparseable."""
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def validate_package(
    package_type: str | None,
    amount: int | None,
    price: Decimal | float | str | None,
    *,
    discounted: bool = False,
    item_type: str | None = None,
) -> Package:
    """Check a requested purchase against the allow-list.

    Discount eligibility is not checked here; callers that accept a
    discounted price must verify the account is premium themselves.

    Args:
        package_type: Package identifier
        amount: Requested quantity
        price: Requested price
        discounted: Whether the premium letter-credit price is requested
        item_type: Requested item type, if the caller sent one

    Returns:
        The matching package

    Raises:
        PurchaseValidationError: On unknown package or any mismatch
    """
    package = PACKAGE_CATALOG.get(package_type or "")
    if package is None:
        raise PurchaseValidationError(f"Unknown package: {package_type}", "unknown_package")

    if item_type is not None and item_type != package.item_type:
        raise PurchaseValidationError(
            f"Item type mismatch for {package.package_type}: expected {package.item_type}, got {item_type}",
            "item_type_mismatch",
        )

    if amount != package.amount:
        raise PurchaseValidationError(
            f"Amount mismatch for {package.package_type}: expected {package.amount}, got {amount}",
            "amount_mismatch",
        )

    if discounted and package.package_type != LETTER_CREDITS:
        raise PurchaseValidationError(
            f"No discount available for {package.package_type}", "invalid_discount"
        )

    expected = parse_price(settings.letter_credit_discount_price) if discounted else package.price
    requested = parse_price(price)
    if requested != expected:
        raise PurchaseValidationError(
            f"Price mismatch for {package.package_type}: expected {expected}, got {requested}",
            "price_mismatch",
        )

    return package


def expected_price(package: Package, discounted: bool = False) -> Decimal:
    if discounted:
        return parse_price(settings.letter_credit_discount_price)
    return package.price
