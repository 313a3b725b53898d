import os
import re
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from auth import (
    get_current_user,
    get_password_hash,
    is_admin,
    require_can_manage,
    require_roles,
    require_self_or_admin,
    token_for,
    verify_password,
)
from checkout import CheckoutError, build_order, build_orders, price_lines
from database import (
    Database,
    DuplicateEmailError,
    get_db,
    update_fields,
)
from recommendations import rank
from schemas import (
    ADMIN_ROLES,
    DEFAULT_LAT,
    DEFAULT_LNG,
    AuthResponse,
    Category,
    CheckoutBody,
    Farm,
    FarmerStats,
    Location,
    Order,
    OrderCreate,
    OrderStatusUpdate,
    Product,
    ProductCreate,
    ProductUpdate,
    Recommendation,
    SignInBody,
    SignUpBody,
    UploadResult,
    User,
    UserCreate,
    UserUpdate,
)

DATABASE_PATH = os.getenv("DATABASE_PATH", "agriconnect.db")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = 5 * 1024 * 1024
SEED_DEMO_USERS = os.getenv("SEED_DEMO_USERS", "1").lower() not in ("0", "false", "no")
DEMO_PASSWORD = "password"

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("agriconnect")


def demo_users() -> List[User]:
    return [
        User(id="admin-1", name="Admin User", email="admin@demo.com", role="admin", phone="+250788000001"),
        User(id="superadmin-1", name="Super Admin", email="superadmin@demo.com", role="superadmin", phone="+250788000000"),
        User(id="customer-1", name="Demo Customer", email="customer@demo.com", role="customer", phone="+250788000002"),
        User(
            id="farmer-1",
            name="Demo Farmer",
            email="farmer@demo.com",
            role="farmer",
            phone="+250788000003",
            farm=Farm(
                name="Demo Farm",
                description="A demo farm for testing purposes",
                certifications=["Organic Certified"],
                established_year=2020,
            ),
            stats=FarmerStats(rating=4.5),
        ),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = Database(DATABASE_PATH)
    db.init_schema()
    if SEED_DEMO_USERS:
        db.seed_users(demo_users(), get_password_hash(DEMO_PASSWORD))
    Path(UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    app.state.db = db
    yield


app = FastAPI(title="AgriConnect API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_error method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def new_user(body: SignUpBody, role: str, avatar: Optional[str] = None) -> User:
    if isinstance(body.location, Location):
        location = body.location
    elif body.location:
        location = Location(address=body.location)
    else:
        location = Location()
    farmer = role == "farmer"
    now = datetime.now(timezone.utc)
    return User(
        id=uuid.uuid4().hex,
        name=body.name,
        email=body.email,
        role=role,
        phone=body.phone,
        avatar=avatar,
        location=location,
        farm=(body.farm or Farm(name=body.name)) if farmer else None,
        stats=FarmerStats() if farmer else None,
        created_at=now,
        updated_at=now,
    )


def insert_user_or_400(db: Database, user: User, password: str) -> User:
    try:
        return db.insert_user(user, get_password_hash(password))
    except DuplicateEmailError:
        raise HTTPException(status_code=400, detail="Email already exists")


# Health

@app.get("/")
def read_root():
    return {"message": "AgriConnect API running"}


@app.get("/api/health")
def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


# Auth

@app.post("/api/auth/signin", response_model=AuthResponse)
def signin(body: SignInBody, db: Database = Depends(get_db)):
    found = db.get_user_credentials(body.email)
    if not found:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user, password_hash = found
    if not user.is_active or not verify_password(body.password, password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return AuthResponse(user=user, token=token_for(user))


@app.post("/api/auth/signup", response_model=AuthResponse)
def signup(body: SignUpBody, db: Database = Depends(get_db)):
    user = insert_user_or_400(db, new_user(body, body.role), body.password)
    logger.info("signup user_id=%s role=%s", user.id, user.role)
    return AuthResponse(user=user, token=token_for(user))


# Users

@app.get("/api/users", response_model=List[User])
def list_users(db: Database = Depends(get_db), _: User = Depends(get_current_user)):
    return db.list_users()


@app.get("/api/users/{user_id}", response_model=User)
def get_user(user_id: str, db: Database = Depends(get_db), _: User = Depends(get_current_user)):
    user = db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.post("/api/users", response_model=User)
def create_user(body: UserCreate, db: Database = Depends(get_db), current: User = Depends(require_roles(*ADMIN_ROLES))):
    if body.role == "superadmin" and current.role != "superadmin":
        raise HTTPException(status_code=403, detail="Only a superadmin can create superadmin accounts")
    user = insert_user_or_400(db, new_user(body, body.role, body.avatar), body.password)
    logger.info("user_created user_id=%s role=%s by=%s", user.id, user.role, current.id)
    return user


@app.put("/api/users/{user_id}")
def update_user(user_id: str, body: UserUpdate, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    require_can_manage(current, db.get_user(user_id))
    if not update_fields(body):
        raise HTTPException(status_code=400, detail="No valid fields to update")
    try:
        updated = db.update_user(user_id, body, get_password_hash)
    except DuplicateEmailError:
        raise HTTPException(status_code=400, detail="Email already exists")
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    require_can_manage(current, db.get_user(user_id))
    if not db.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("user_deleted user_id=%s by=%s", user_id, current.id)
    return {"success": True}


# Products

def get_product_or_404(db: Database, product_id: str) -> Product:
    product = db.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/api/products", response_model=List[Product])
def list_products(
    farmer_id: Optional[str] = Query(None, alias="farmerId"),
    category: Optional[Category] = None,
    db: Database = Depends(get_db),
):
    return db.list_products(farmer_id=farmer_id, category=category)


@app.get("/api/products/{product_id}", response_model=Product)
def get_product(product_id: str, db: Database = Depends(get_db)):
    return get_product_or_404(db, product_id)


@app.post("/api/products", response_model=Product)
def create_product(
    body: ProductCreate,
    db: Database = Depends(get_db),
    current: User = Depends(require_roles("farmer", *ADMIN_ROLES)),
):
    if current.role == "farmer":
        if body.farmer_id and body.farmer_id != current.id:
            raise HTTPException(status_code=403, detail="Farmers can only list their own products")
        farmer = current
    else:
        if not body.farmer_id:
            raise HTTPException(status_code=400, detail="farmerId is required")
        farmer = db.get_user(body.farmer_id)
        if not farmer or farmer.role != "farmer":
            raise HTTPException(status_code=400, detail="farmerId must reference a farmer")
    product = Product(
        id=uuid.uuid4().hex,
        farmer_id=farmer.id,
        name=body.name,
        category=body.category,
        price=body.price,
        unit=body.unit,
        description=body.description,
        images=body.images,
        stock=body.stock,
        quality=body.quality,
        location=body.location or farmer.location,
    )
    created = db.insert_product(product)
    logger.info("product_created product_id=%s farmer_id=%s", created.id, created.farmer_id)
    return created


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    product = get_product_or_404(db, product_id)
    require_self_or_admin(current, product.farmer_id)
    if not update_fields(body):
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if not db.update_product(product_id, body):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    product = get_product_or_404(db, product_id)
    require_self_or_admin(current, product.farmer_id)
    if not db.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True}


# Recommendations

@app.get("/api/recommendations", response_model=List[Recommendation])
def recommendations(
    lat: float = Query(DEFAULT_LAT, ge=-90, le=90),
    lng: float = Query(DEFAULT_LNG, ge=-180, le=180),
    category: Optional[Category] = None,
    db: Database = Depends(get_db),
):
    return rank(db.list_products(category=category), Location(lat=lat, lng=lng), category)


# Orders

@app.get("/api/orders", response_model=List[Order])
def list_orders(
    farmer_id: Optional[str] = Query(None, alias="farmerId"),
    customer_id: Optional[str] = Query(None, alias="customerId"),
    db: Database = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return db.list_orders(farmer_id=farmer_id, customer_id=customer_id)


@app.get("/api/orders/{order_id}", response_model=Order)
def get_order(order_id: str, db: Database = Depends(get_db), _: User = Depends(get_current_user)):
    order = db.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/api/orders", response_model=Order)
def create_order(body: OrderCreate, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    products = db.get_products([line.product_id for line in body.items])
    try:
        priced = price_lines(body.items, products)
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    farmer_ids = {farmer_id for farmer_id, _ in priced}
    if len(farmer_ids) != 1:
        raise HTTPException(status_code=400, detail="All items of an order must come from one farmer")
    farmer_id = farmer_ids.pop()
    if body.farmer_id and body.farmer_id != farmer_id:
        raise HTTPException(status_code=400, detail="farmerId does not match the ordered products")
    order = build_order(
        current,
        farmer_id,
        [item for _, item in priced],
        body.delivery_address,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
        notes=body.notes,
        estimated_delivery=body.estimated_delivery,
    )
    created = db.insert_orders([order])[0]
    logger.info("order_created order_id=%s customer_id=%s farmer_id=%s total=%s", created.id, current.id, farmer_id, created.total)
    return created


@app.post("/api/orders/checkout", response_model=List[Order])
def checkout(body: CheckoutBody, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    products = db.get_products([line.product_id for line in body.items])
    try:
        priced = price_lines(body.items, products)
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    orders = build_orders(
        current,
        priced,
        body.delivery_address,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
        notes=body.notes,
    )
    created = db.insert_orders(orders)
    logger.info("checkout customer_id=%s orders=%s", current.id, ",".join(o.id for o in created))
    return created


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusUpdate, db: Database = Depends(get_db), current: User = Depends(get_current_user)):
    order = db.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.farmer_id != current.id and not is_admin(current):
        raise HTTPException(status_code=403, detail="Only the order's farmer can change its status")
    if not db.update_order_status(order_id, body.status):
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("order_status_changed order_id=%s status=%s by=%s", order_id, body.status, current.id)
    return {"success": True}


# Uploads

@app.post("/api/upload", response_model=UploadResult)
def upload_image(file: UploadFile = File(...), _: User = Depends(get_current_user)):
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files are allowed")
    data = file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large (max 5MB)")
    suffix = Path(file.filename or "").suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,5}", suffix):
        suffix = ""
    name = uuid.uuid4().hex + suffix
    Path(UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    (Path(UPLOAD_DIR) / name).write_bytes(data)
    logger.info("upload_saved name=%s bytes=%s", name, len(data))
    return UploadResult(url=f"/uploads/{name}")


@app.get("/uploads/{filename}")
def get_upload(filename: str):
    path = Path(UPLOAD_DIR) / Path(filename).name
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
