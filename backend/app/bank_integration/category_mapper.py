"""
Category Mapping

Maps the aggregator's category hierarchy onto the local category enum.
Only the first (most specific) element is looked up; anything outside the
table falls back to Other.
"""

from typing import Optional, Sequence

from backend.app.models import TransactionCategory


PLAID_CATEGORY_MAP = {
    'Food and Drink': TransactionCategory.FOOD,
    'Travel': TransactionCategory.TRANSPORTATION,
    'Transportation': TransactionCategory.TRANSPORTATION,
    'Payment': TransactionCategory.DEBT,
    'Shops': TransactionCategory.PERSONAL,
    'Recreation': TransactionCategory.ENTERTAINMENT,
    'Healthcare': TransactionCategory.HEALTHCARE,
    'Service': TransactionCategory.UTILITIES,
    'Community': TransactionCategory.OTHER,
    'Bank Fees': TransactionCategory.OTHER,
    'Cash Advance': TransactionCategory.OTHER,
    'Interest': TransactionCategory.INCOME,
    'Transfer': TransactionCategory.TRANSFER,
    'Rent': TransactionCategory.HOUSING,
    'Mortgage': TransactionCategory.HOUSING,
    'Loan': TransactionCategory.DEBT,
    'Tax': TransactionCategory.OTHER,
    'Insurance': TransactionCategory.INSURANCE,
    'Subscription': TransactionCategory.PERSONAL,
    'Income': TransactionCategory.INCOME,
    'Education': TransactionCategory.EDUCATION,
}

FALLBACK_CATEGORY = TransactionCategory.OTHER


def map_external_category(category_path: Optional[Sequence[str]]) -> TransactionCategory:
    """
    Map an external category path to a local category.

    Args:
        category_path: Ordered category names, most specific first, or None

    Returns:
        Mapped TransactionCategory, Other when absent or unknown

    Example:
        >>> map_external_category(['Food and Drink', 'Restaurants'])
        <TransactionCategory.FOOD: 'Food'>
        >>> map_external_category(None)
        <TransactionCategory.OTHER: 'Other'>
    """
    if not category_path:
        return FALLBACK_CATEGORY

    if isinstance(category_path, str):
        leaf = category_path
    elif isinstance(category_path, (list, tuple)):
        leaf = category_path[0]
    else:
        return FALLBACK_CATEGORY

    if not isinstance(leaf, str):
        return FALLBACK_CATEGORY

    return PLAID_CATEGORY_MAP.get(leaf, FALLBACK_CATEGORY)


def extract_subcategory(category_path: Optional[Sequence[str]]) -> Optional[str]:
    """Second element of the path, verbatim, or None."""
    if not isinstance(category_path, (list, tuple)) or len(category_path) < 2:
        return None
    return category_path[1]
