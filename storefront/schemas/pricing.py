from sqlmodel import SQLModel


class PriceBreakdown(SQLModel):
    """
    Decomposition of a total into subtotal, discount, insurance, shipping,
    tax and coupon. Shown at checkout and frozen onto the order.
    """

    original_subtotal: float
    item_discount: float
    subtotal: float
    total_insurance: float
    shipping_cost: float
    tax: float
    coupon_discount: float
    grand_total: float
    total_savings: float
