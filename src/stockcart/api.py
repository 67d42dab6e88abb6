"""FastAPI REST API for the stockcart inventory core."""

from typing import Literal, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import (
    EmptyOrderError,
    GuestCartError,
    InsufficientStockError,
    InvalidQuantityError,
    InvalidTransitionError,
    ItemNotFoundError,
    OrderNotFoundError,
    OutOfStockError,
    OwnershipMismatchError,
    ProductNotFoundError,
    RetryableStoreError,
    ReturnWindowExpiredError,
    StockcartError,
)
from .models import Cart, CartResult, LineRequest
from .services import Services, get_services


# --- Pydantic Schemas ---


class LineSchema(BaseModel):
    product_id: str
    quantity: int = 1
    variant_id: Optional[str] = None

    def to_request(self) -> LineRequest:
        return LineRequest(self.product_id, self.quantity, self.variant_id)


class CartItemRequest(BaseModel):
    """Request body for adding or updating a cart line."""

    product_id: str
    quantity: int = Field(default=1, description="Units to add (POST) or the new quantity (PUT)")
    variant_id: Optional[str] = None


class CartSyncRequest(BaseModel):
    items: list[LineSchema] = Field(default_factory=list)


class CartLineSchema(BaseModel):
    product_id: str
    product_name: str
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    quantity: int
    unit_price: str
    line_total: str


class CartStatsSchema(BaseModel):
    item_count: int
    total_items: int
    total_value: str
    last_updated: str


class CartSchema(BaseModel):
    user_id: str
    lines: list[CartLineSchema]
    updated_at: str
    stats: CartStatsSchema


class CartMutationResponse(BaseModel):
    cart: CartSchema
    status: str  # "ok" | "clamped"
    requested_quantity: int
    applied_quantity: int
    reason: Optional[str] = None


class CartSyncResponse(BaseModel):
    cart: CartSchema
    succeeded: list[dict]
    failed: list[dict]


class StockResponse(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    available: int
    in_stock: bool


class OrderCreateRequest(BaseModel):
    """Request body for an order from an explicit list of lines."""

    items: list[LineSchema]
    shipping_address: dict = Field(default_factory=dict)
    billing_address: Optional[dict] = None
    payment_method: str = ""
    notes: Optional[str] = None


class CheckoutRequest(BaseModel):
    """Request body for an order from the caller's cart."""

    shipping_address: dict = Field(default_factory=dict)
    billing_address: Optional[dict] = None
    payment_method: str = ""
    notes: Optional[str] = None


class ReturnRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    item_ids: list[str] = Field(
        default_factory=list, description="Product ids to return (all items if empty)"
    )


class StatusUpdateRequest(BaseModel):
    status: str
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[str] = None


class PaymentWebhookRequest(BaseModel):
    order_id: str
    outcome: Literal["success", "failure"]
    gateway: Optional[str] = None
    payment_id: Optional[str] = None


class WishlistRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    auto_add_to_cart: bool = False
    notify_on_restock: bool = False


class WishlistUpdateRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    auto_add_to_cart: Optional[bool] = None
    notify_on_restock: Optional[bool] = None


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helper Functions ---


def services() -> Services:
    """Get the services for the configured data directory."""
    return get_services()


def cart_to_schema(cart: Cart) -> CartSchema:
    """Convert a dataclass Cart to its Pydantic schema."""
    return CartSchema(
        user_id=cart.user_id,
        lines=[
            CartLineSchema(
                product_id=line.product_id,
                product_name=line.product_name,
                variant_id=line.variant_id,
                variant_name=line.variant_name,
                quantity=line.quantity,
                unit_price=str(line.unit_price),
                line_total=str(line.line_total),
            )
            for line in cart.lines
        ],
        updated_at=cart.updated_at,
        stats=CartStatsSchema(**cart.stats()),
    )


def result_to_schema(result: CartResult) -> CartMutationResponse:
    return CartMutationResponse(
        cart=cart_to_schema(result.cart),
        status=result.status,
        requested_quantity=result.requested_quantity,
        applied_quantity=result.applied_quantity,
        reason=result.reason,
    )


# --- FastAPI App ---

app = FastAPI(
    title="stockcart API",
    description="Inventory-aware cart, checkout and restock API",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    ProductNotFoundError: 404,
    ItemNotFoundError: 404,
    OrderNotFoundError: 404,
    OwnershipMismatchError: 404,
    OutOfStockError: 409,
    InsufficientStockError: 409,
    InvalidTransitionError: 409,
    ReturnWindowExpiredError: 400,
    InvalidQuantityError: 400,
    EmptyOrderError: 400,
    GuestCartError: 401,
    RetryableStoreError: 503,
}


@app.exception_handler(StockcartError)
async def stockcart_error_handler(request: Request, exc: StockcartError) -> JSONResponse:
    """Map StockcartError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    svc = services()
    try:
        products = svc.stores.catalog.list_products()
        return {
            "status": "ok",
            "product_count": len(products),
            "watcher_running": svc.watcher.running,
        }
    except Exception as e:
        return {
            "status": "error",
            "detail": str(e),
        }


@app.get("/api/products/{product_id}/stock", response_model=StockResponse)
def get_stock(product_id: str, variant_id: Optional[str] = Query(None)):
    """Current sellable stock of a product or one of its variants."""
    available = services().ledger.available(product_id, variant_id)
    return StockResponse(
        product_id=product_id,
        variant_id=variant_id,
        available=available,
        in_stock=available > 0,
    )


# --- Cart Endpoints ---


@app.get("/api/cart", response_model=CartSchema)
def get_cart(x_user_id: Optional[str] = Header(None)):
    return cart_to_schema(services().carts.get_cart(x_user_id))


@app.post("/api/cart/items", response_model=CartMutationResponse)
def add_cart_item(request: CartItemRequest, x_user_id: Optional[str] = Header(None)):
    """Add units to the cart. A clamped add still succeeds, with status "clamped"."""
    result = services().carts.add_item(
        x_user_id, request.product_id, request.quantity, request.variant_id
    )
    return result_to_schema(result)


@app.put("/api/cart/items", response_model=CartMutationResponse)
def update_cart_item(request: CartItemRequest, x_user_id: Optional[str] = Header(None)):
    """Set a line's quantity; zero or less removes it."""
    result = services().carts.update_quantity(
        x_user_id, request.product_id, request.quantity, request.variant_id
    )
    return result_to_schema(result)


@app.delete("/api/cart/items", response_model=CartSchema)
def remove_cart_item(
    product_id: str = Query(...),
    variant_id: Optional[str] = Query(None),
    x_user_id: Optional[str] = Header(None),
):
    return cart_to_schema(services().carts.remove_item(x_user_id, product_id, variant_id))


@app.delete("/api/cart", response_model=CartSchema)
def clear_cart(x_user_id: Optional[str] = Header(None)):
    return cart_to_schema(services().carts.clear(x_user_id))


@app.post("/api/cart/sync", response_model=CartSyncResponse)
def sync_cart(request: CartSyncRequest, x_user_id: Optional[str] = Header(None)):
    """Merge a client-held cart into the caller's cart."""
    result = services().carts.sync_from_anonymous(
        x_user_id, [item.to_request() for item in request.items]
    )
    return CartSyncResponse(
        cart=cart_to_schema(result.cart),
        succeeded=result.succeeded,
        failed=result.failed,
    )


# --- Order Endpoints ---


@app.post("/api/orders", status_code=201)
def create_order(request: OrderCreateRequest, x_user_id: Optional[str] = Header(None)):
    """Create an order from explicit lines. Guests (no X-User-Id) are allowed."""
    order = services().orders.create_order(
        x_user_id,
        [item.to_request() for item in request.items],
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        payment_method=request.payment_method,
        notes=request.notes,
    )
    return order.to_dict()


@app.post("/api/orders/checkout", status_code=201)
def checkout(request: CheckoutRequest, x_user_id: Optional[str] = Header(None)):
    """Create an order from the caller's cart and empty the cart."""
    order = services().orders.checkout(
        x_user_id,
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        payment_method=request.payment_method,
        notes=request.notes,
    )
    return order.to_dict()


@app.get("/api/orders")
def list_orders(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    x_user_id: Optional[str] = Header(None),
):
    if not x_user_id:
        raise GuestCartError("Order history")
    return services().orders.list_orders(x_user_id, status, page, limit).to_dict()


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, x_user_id: Optional[str] = Header(None)):
    return services().orders.get_order(order_id, x_user_id or "").to_dict()


@app.get("/api/orders/{order_id}/tracking")
def get_tracking(order_id: str, x_user_id: Optional[str] = Header(None)):
    return services().orders.tracking(order_id, x_user_id or "")


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, x_user_id: Optional[str] = Header(None)):
    return services().orders.cancel_order(order_id, x_user_id).to_dict()


@app.post("/api/orders/{order_id}/return")
def request_return(
    order_id: str, request: ReturnRequest, x_user_id: Optional[str] = Header(None)
):
    order = services().orders.request_return(
        order_id, x_user_id, request.reason, request.item_ids
    )
    return order.to_dict()


@app.put("/api/admin/orders/{order_id}/status")
def update_order_status(order_id: str, request: StatusUpdateRequest):
    """Move an order through the status state machine (admin)."""
    order = services().orders.update_status(
        order_id,
        request.status,
        note=request.note,
        tracking_number=request.tracking_number,
        estimated_delivery=request.estimated_delivery,
    )
    return order.to_dict()


@app.post("/api/payments/webhook")
def payment_webhook(request: PaymentWebhookRequest):
    """Payment gateway callback: {order_id, outcome}."""
    order = services().orders.apply_payment_outcome(
        request.order_id,
        request.outcome == "success",
        gateway=request.gateway,
        payment_id=request.payment_id,
    )
    return order.to_dict()


# --- Wishlist Endpoints ---


@app.get("/api/wishlist")
def get_wishlist(x_user_id: Optional[str] = Header(None)):
    entries = services().wishlist.get_wishlist(x_user_id)
    return {"wishlist": entries, "count": len(entries)}


@app.post("/api/wishlist", status_code=201)
def add_wishlist_entry(request: WishlistRequest, x_user_id: Optional[str] = Header(None)):
    entry = services().wishlist.add_entry(
        x_user_id,
        request.product_id,
        request.variant_id,
        auto_add_to_cart=request.auto_add_to_cart,
        notify_on_restock=request.notify_on_restock,
    )
    return entry.to_dict()


@app.put("/api/wishlist")
def update_wishlist_entry(
    request: WishlistUpdateRequest, x_user_id: Optional[str] = Header(None)
):
    entry = services().wishlist.update_entry(
        x_user_id,
        request.product_id,
        request.variant_id,
        auto_add_to_cart=request.auto_add_to_cart,
        notify_on_restock=request.notify_on_restock,
    )
    return entry.to_dict()


@app.delete("/api/wishlist")
def remove_wishlist_entry(
    product_id: str = Query(...),
    variant_id: Optional[str] = Query(None),
    x_user_id: Optional[str] = Header(None),
):
    remaining = services().wishlist.remove_entry(x_user_id, product_id, variant_id)
    return {"wishlist": [e.to_dict() for e in remaining], "count": len(remaining)}


# --- Watcher Endpoints ---


@app.get("/api/watcher/status")
def watcher_status():
    return services().watcher.status()


@app.post("/api/watcher/sweep")
def run_sweep():
    """Run one restock sweep now (skipped if one is already running)."""
    return services().watcher.sweep().to_dict()
