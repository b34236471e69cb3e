from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

# Circle Kitchen Schemas
#
# Documents are stored snake_case; the HTTP surface speaks camelCase.

ServiceType = Literal["delivery", "pickup"]
OrderStatus = Literal[
    "pending",
    "confirmed",
    "preparing",
    "ready-for-pickup",
    "out-for-delivery",
    "completed",
    "cancelled",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
DiscountType = Literal["percentage", "fixed"]
SpiceLevel = Literal["mild", "medium", "hot", "very-hot"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Address(CamelModel):
    street: Optional[str] = None
    area: Optional[str] = None
    city: Optional[str] = "Muscat"
    postal_code: Optional[str] = ""
    phone: Optional[str] = None


# Catalog

class ProductBase(CamelModel):
    name: str
    description: str = ""
    category: Optional[str] = None
    price: float = Field(ge=0)
    min_order_quantity: int = Field(1, ge=1)
    is_on_offer: bool = False
    discount_type: DiscountType = "percentage"
    discount_value: Optional[float] = None
    offer_start_date: Optional[datetime] = None
    offer_end_date: Optional[datetime] = None
    preparation_time: int = Field(0, ge=0)
    is_available: bool = True
    is_vegetarian: bool = False
    spice_level: SpiceLevel = "mild"
    ingredients: Optional[str] = None
    allergens: Optional[str] = None
    image_url: Optional[str] = None
    serving_size: str = "1 person"


class ProductIn(ProductBase):
    """Admin write model; offer bounds are enforced here and only here."""

    @model_validator(mode="after")
    def check_discount(self) -> "ProductIn":
        if not self.is_on_offer:
            return self
        value = self.discount_value
        if value is None or value <= 0:
            raise ValueError("Discount value must be greater than 0")
        if self.discount_type == "percentage" and value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        if self.discount_type == "fixed" and value >= self.price:
            raise ValueError("Fixed discount cannot exceed the product price")
        if self.offer_start_date and self.offer_end_date and self.offer_end_date < self.offer_start_date:
            raise ValueError("Offer end date must be after the start date")
        return self


class Product(ProductBase):
    id: str


class PriceInfo(CamelModel):
    is_on_sale: bool
    original_price: float
    effective_price: float
    savings: float
    savings_percentage: int
    display_price: float
    has_discount: bool


class ProductOut(Product):
    price_info: PriceInfo


class CategoryIn(CamelModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True
    display_order: int = 0


class CategoryOut(CategoryIn):
    id: str
    item_count: int = 0


# Store configuration

class ServiceOptions(CamelModel):
    enable_delivery: bool = True
    enable_pickup: bool = True
    delivery_message: str = "We deliver to your doorstep"
    pickup_message: str = "Ready for pickup in 30 minutes"
    pickup_address: str = ""
    estimated_delivery_time: str = "45-60 minutes"
    estimated_pickup_time: str = "30 minutes"
    delivery_fee: float = Field(1.00, ge=0)
    free_delivery_threshold: float = Field(50, ge=0)


class ContactInfo(CamelModel):
    phone: str = ""
    email: str = ""
    address: str = ""
    google_maps_link: str = ""


class OperatingHours(CamelModel):
    open_time: str = "09:00"
    close_time: str = "22:00"
    closed_days: List[str] = Field(default_factory=list)


class StoreConfig(CamelModel):
    store_name: str = "FlavorForge"
    currency: str = "USD"
    currency_symbol: str = "$"
    currency_position: Literal["before", "after"] = "before"
    show_ratings: bool = True
    allow_reviews: bool = True
    tax_rate: float = Field(0, ge=0)
    min_order_amount: float = Field(5, ge=0)
    store_timezone: str = "Asia/Muscat"
    service_options: ServiceOptions = Field(default_factory=ServiceOptions)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    operating_hours: OperatingHours = Field(default_factory=OperatingHours)


# Cart and checkout

class CartLine(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None  # client claim, never trusted
    quantity: int = Field(1, ge=1)


class CustomerInfo(CamelModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None


class CheckoutRequest(CamelModel):
    items: List[CartLine] = Field(default_factory=list)
    customer_info: Optional[CustomerInfo] = None
    delivery_address: Optional[Address] = None
    service_type: Optional[ServiceType] = None
    booking_date: Optional[datetime] = None
    customer_notes: Optional[str] = None
    total_amount: Optional[float] = None


class OrderSummary(CamelModel):
    id: str
    order_number: str
    total_amount: float
    status: OrderStatus
    booking_date: datetime


class CustomerSummary(CamelModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    default_address: Optional[Address] = None


class CheckoutCustomer(CustomerSummary):
    is_new_customer: bool


class CheckoutResponse(CamelModel):
    success: bool = True
    order: OrderSummary
    customer: CheckoutCustomer
    auth_token: Optional[str] = None


class QuoteRequest(CamelModel):
    items: List[CartLine] = Field(default_factory=list)
    service_type: ServiceType = "delivery"


class QuoteLine(CamelModel):
    id: str
    name: str
    quantity: int
    unit_price: float
    subtotal: float
    price_info: PriceInfo
    min_order_quantity: int
    below_minimum_quantity: bool


class CartQuote(CamelModel):
    success: bool = True
    items: List[QuoteLine]
    subtotal: float
    delivery_fee: float
    tax: float
    total: float
    min_order_amount: float
    meets_minimum_order: bool
    has_min_quantity_issues: bool
    can_checkout: bool
    store_open: bool


# Customers and auth

class LoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class RegisterRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    default_address: Optional[Address] = None


class AuthResponse(CamelModel):
    success: bool = True
    token: str
    user: CustomerSummary


# Orders

class OrderLine(CamelModel):
    product: str
    name: Optional[str] = None
    quantity: int = Field(ge=1)
    price: float
    list_price: Optional[float] = None
    subtotal: float


class OrderOut(CamelModel):
    id: str
    order_number: str
    customer: str
    customer_name: Optional[str] = None
    items: List[OrderLine]
    total_amount: float
    status: OrderStatus
    service_type: ServiceType
    booking_date: datetime
    delivery_address: Optional[Address] = None
    payment_status: PaymentStatus
    customer_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    actual_delivery_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class HistoryItem(CamelModel):
    id: Optional[str] = None
    name: str
    price: float
    quantity: int
    category: str


class CustomerOrderView(CamelModel):
    id: str
    order_number: str
    status: OrderStatus
    service_type: ServiceType
    total_amount: float
    booking_date: datetime
    created_at: Optional[datetime] = None
    items: List[HistoryItem]
    delivery_address: Optional[Address] = None
    customer_notes: Optional[str] = None


class StatusUpdateRequest(CamelModel):
    order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    admin_notes: Optional[str] = None


class CancelRequest(CamelModel):
    order_number: Optional[str] = None
    customer_id: Optional[str] = None
    reason: Optional[str] = None


class CustomerOrderLookup(CamelModel):
    customer_id: Optional[str] = None
    order_number: Optional[str] = None


class StatusHistoryEntry(CamelModel):
    id: str
    order: str
    status: OrderStatus
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    timestamp: datetime
