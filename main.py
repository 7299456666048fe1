import logging
import hashlib
import re
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

import config
import orders
from database import db, create_document, get_documents, ensure_indexes
from schemas import (
    UserCreate, UserLogin, TokenResponse, UserUpdate, PasswordChange, User,
    ShopCreate, ShopUpdate, Shop,
    ProductCreate, ProductUpdate, Product,
    OrderCreate, OrderStatusUpdate,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

START_TIME = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; running without a database")
    yield


app = FastAPI(title="Artisania API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL] if config.FRONTEND_URL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -------------------- Error handling --------------------

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Validation failed", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(orders.OrderError)
async def order_error_handler(request: Request, exc: orders.OrderError):
    logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong!"})


# -------------------- Helpers --------------------

def to_object_id(id_str: str, detail: str = "Not found") -> ObjectId:
    # malformed ids are reported like missing documents
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail=detail)


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def doc_to_json(doc):
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        elif isinstance(v, dict):
            out[k] = doc_to_json(v)
        elif isinstance(v, list):
            out[k] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[k] = v
    return out


PRIVATE_USER_FIELDS = ("password_hash", "salt", "token", "token_expires")


def user_to_json(doc: dict) -> dict:
    return doc_to_json({k: v for k, v in doc.items() if k not in PRIVATE_USER_FIELDS})


def shop_to_json(doc: dict) -> dict:
    if not doc:
        return doc
    out = doc_to_json(doc)
    out["slug"] = re.sub(r"^-|-$", "", re.sub(r"-+", "-", re.sub(r"[^a-z0-9]", "-", doc["name"].lower())))
    addr = doc.get("address") or {}
    out["full_address"] = f"{addr.get('street')}, {addr.get('city')} {addr.get('postal_code')}, {addr.get('country')}"
    return out


def product_to_json(doc: dict) -> dict:
    out = doc_to_json(doc)
    images = doc.get("images") or []
    out["is_available"] = bool(doc.get("is_active")) and doc.get("stock", 0) > 0
    out["main_image"] = images[0]["url"] if images else None
    return out


def order_to_json(doc: dict) -> dict:
    out = doc_to_json(doc)
    out.pop("idempotency_key", None)
    out["total_items"] = sum(i["quantity"] for i in doc.get("items", []))
    return out


def product_tags(name: str, description: str) -> List[str]:
    words = re.findall(r"\b\w+\b", f"{name} {description}".lower())
    return list(dict.fromkeys(w for w in words if len(w) > 2))


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    role: str
    first_name: str = ""
    last_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def issue_token(user_id) -> str:
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=config.TOKEN_TTL_DAYS)
    db["user"].update_one({"_id": user_id}, {"$set": {"token": token, "token_expires": expires}})
    return token


def get_user_by_token(token: str) -> Optional[dict]:
    user = db["user"].find_one({"token": token})
    if not user:
        return None
    expires = user.get("token_expires")
    if expires is None:
        return None
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    if expires <= datetime.now(timezone.utc):
        return None
    return user


async def auth_dependency(authorization: Optional[str] = Header(None)) -> AuthUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    token = authorization.split(" ", 1)[1]
    user = get_user_by_token(token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Token is not valid or user is inactive.")
    return AuthUser(
        id=str(user["_id"]),
        email=user["email"],
        role=user.get("role", "customer"),
        first_name=user.get("first_name", ""),
        last_name=user.get("last_name", ""),
    )


def require_role(*roles: str):
    async def checker(user: AuthUser = Depends(auth_dependency)) -> AuthUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Access denied. Insufficient permissions.")
        return user
    return checker


def get_owned_shop(user: AuthUser) -> Optional[dict]:
    return db["shop"].find_one({"owner_id": user.id})


# -------------------- Health --------------------

@app.get("/")
def read_root():
    return {
        "message": "Welcome to Artisania API",
        "version": app.version,
        "status": "Server is running",
        "endpoints": {
            "auth": "/api/auth",
            "products": "/api/products",
            "shops": "/api/shops",
            "orders": "/api/orders",
            "users": "/api/users",
        },
    }


@app.get("/health")
def health():
    response = {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - START_TIME, 2),
        "database": "Not Available",
        "collections": [],
    }
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "Connected"
        except Exception as e:
            logger.error("Database health check failed: %s", e)
            response["database"] = f"Error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------

@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: UserCreate):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="User already exists with this email")
    pw_hash, salt = hash_password(payload.password)
    user = User(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        password_hash=pw_hash,
        salt=salt,
        role=payload.role,
        phone=payload.phone,
        address=payload.address,
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User already exists with this email")
    token = issue_token(ObjectId(user_id))
    logger.info("Registered %s user %s", payload.role, user_id)
    return TokenResponse(access_token=token, user=user_to_json(db["user"].find_one({"_id": ObjectId(user_id)})))


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: UserLogin):
    user = db["user"].find_one({"email": payload.email})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    if not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": datetime.now(timezone.utc)}})
    token = issue_token(user["_id"])
    return TokenResponse(access_token=token, user=user_to_json(db["user"].find_one({"_id": user["_id"]})))


@app.get("/api/auth/me", response_model=dict)
def me(user: AuthUser = Depends(auth_dependency)):
    return user_to_json(db["user"].find_one({"_id": ObjectId(user.id)}))


@app.post("/api/auth/logout", response_model=dict)
def logout(user: AuthUser = Depends(auth_dependency)):
    db["user"].update_one({"_id": ObjectId(user.id)}, {"$unset": {"token": "", "token_expires": ""}})
    return {"message": "Logged out successfully"}


# -------------------- Users --------------------

def load_user_for(user_id: str, user: AuthUser, action: str) -> dict:
    target = db["user"].find_one({"_id": to_object_id(user_id, "User not found")})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if not user.is_admin and user.id != user_id:
        raise HTTPException(status_code=403, detail=f"Not authorized to {action}")
    return target


@app.get("/api/users/{user_id}", response_model=dict)
def get_user(user_id: str, user: AuthUser = Depends(auth_dependency)):
    target = load_user_for(user_id, user, "view this profile")
    shop = db["shop"].find_one({"owner_id": user_id}) if target.get("role") == "seller" else None
    return {
        "user": user_to_json(target),
        "shop": shop_to_json(shop),
        "stats": orders.order_stats(db, user_id=user_id),
    }


@app.put("/api/users/{user_id}", response_model=dict)
def update_user(user_id: str, payload: UserUpdate, user: AuthUser = Depends(auth_dependency)):
    target = load_user_for(user_id, user, "update this profile")
    allowed = {"first_name", "last_name", "phone", "address", "avatar"}
    if user.is_admin:
        allowed |= {"role", "is_active", "is_verified"}
    update = {k: v for k, v in payload.model_dump(exclude_none=True).items() if k in allowed}
    update["updated_at"] = datetime.now(timezone.utc)
    db["user"].update_one({"_id": target["_id"]}, {"$set": update})
    return user_to_json(db["user"].find_one({"_id": target["_id"]}))


@app.delete("/api/users/{user_id}", response_model=dict)
def delete_user(user_id: str, user: AuthUser = Depends(auth_dependency)):
    target = load_user_for(user_id, user, "delete this account")
    db["user"].update_one(
        {"_id": target["_id"]},
        {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc)},
         "$unset": {"token": "", "token_expires": ""}},
    )
    logger.info("User %s deactivated by %s", user_id, user.id)
    return {"message": "User account deactivated successfully"}


@app.put("/api/users/{user_id}/password", response_model=dict)
def change_password(user_id: str, payload: PasswordChange, user: AuthUser = Depends(auth_dependency)):
    if user.id != user_id:
        raise HTTPException(status_code=403, detail="Not authorized to change this password")
    target = db["user"].find_one({"_id": to_object_id(user_id, "User not found")})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.current_password, target.get("salt", ""), target.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    pw_hash, salt = hash_password(payload.new_password)
    db["user"].update_one(
        {"_id": target["_id"]},
        {"$set": {"password_hash": pw_hash, "salt": salt, "updated_at": datetime.now(timezone.utc)}},
    )
    return {"message": "Password changed successfully"}


@app.get("/api/users/{user_id}/stats", response_model=dict)
def user_stats(user_id: str, user: AuthUser = Depends(auth_dependency)):
    target = load_user_for(user_id, user, "view these statistics")
    shop_stats = None
    if target.get("role") == "seller":
        shop = db["shop"].find_one({"owner_id": user_id})
        if shop:
            shop_stats = orders.refresh_shop_stats(db, str(shop["_id"]))
    return {"orders": orders.order_stats(db, user_id=user_id), "shop": shop_stats}


@app.put("/api/users/{user_id}/toggle-status", response_model=dict)
def toggle_user_status(user_id: str, user: AuthUser = Depends(require_role("admin"))):
    target = db["user"].find_one({"_id": to_object_id(user_id, "User not found")})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    is_active = not target.get("is_active", True)
    db["user"].update_one({"_id": target["_id"]}, {"$set": {"is_active": is_active, "updated_at": datetime.now(timezone.utc)}})
    return {
        "message": f"User {'activated' if is_active else 'deactivated'} successfully",
        "user": {"id": user_id, "email": target["email"], "is_active": is_active},
    }


# -------------------- Shops --------------------

def load_shop_for_owner(shop_id: str, user: AuthUser, action: str) -> dict:
    shop = db["shop"].find_one({"_id": to_object_id(shop_id, "Shop not found")})
    if not shop:
        raise HTTPException(status_code=404, detail="Shop not found")
    if shop.get("owner_id") != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail=f"Not authorized to {action}")
    return shop


@app.post("/api/shops", response_model=dict, status_code=201)
def create_shop(payload: ShopCreate, user: AuthUser = Depends(require_role("seller", "admin"))):
    if get_owned_shop(user):
        raise HTTPException(status_code=400, detail="You already have a shop")
    try:
        shop_id = create_document("shop", Shop(**payload.model_dump(), owner_id=user.id))
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You already have a shop")
    logger.info("Shop %s created by %s", shop_id, user.id)
    return shop_to_json(db["shop"].find_one({"_id": ObjectId(shop_id)}))


@app.get("/api/shops/my-shop", response_model=dict)
def my_shop(user: AuthUser = Depends(require_role("seller", "admin"))):
    shop = get_owned_shop(user)
    if not shop:
        raise HTTPException(status_code=404, detail="You don't have a shop yet")
    shop_id = str(shop["_id"])
    total = db["product"].count_documents({"shop_id": shop_id})
    active = db["product"].count_documents({"shop_id": shop_id, "is_active": True})
    return {
        "shop": shop_to_json(shop),
        "stats": {"total_products": total, "active_products": active, "inactive_products": total - active},
    }


@app.get("/api/shops/{shop_id}", response_model=dict)
def get_shop(shop_id: str):
    shop = db["shop"].find_one({"_id": to_object_id(shop_id, "Shop not found")})
    if not shop or not shop.get("is_active"):
        raise HTTPException(status_code=404, detail="Shop not found")
    recent = get_documents("product", {"shop_id": shop_id, "is_active": True}, limit=8)
    return {"shop": shop_to_json(shop), "recent_products": [product_to_json(p) for p in recent]}


@app.put("/api/shops/{shop_id}", response_model=dict)
def update_shop(shop_id: str, payload: ShopUpdate, user: AuthUser = Depends(auth_dependency)):
    shop = load_shop_for_owner(shop_id, user, "update this shop")
    update = payload.model_dump(exclude_none=True)
    update["updated_at"] = datetime.now(timezone.utc)
    db["shop"].update_one({"_id": shop["_id"]}, {"$set": update})
    return shop_to_json(db["shop"].find_one({"_id": shop["_id"]}))


@app.put("/api/shops/{shop_id}/stats", response_model=dict)
def update_shop_stats(shop_id: str, user: AuthUser = Depends(auth_dependency)):
    load_shop_for_owner(shop_id, user, "update this shop stats")
    return {"message": "Shop stats updated successfully", "stats": orders.refresh_shop_stats(db, shop_id)}


# -------------------- Products --------------------

def load_product_for_owner(product_id: str, user: AuthUser, action: str) -> dict:
    prod = db["product"].find_one({"_id": to_object_id(product_id, "Product not found")})
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    if prod.get("owner_id") != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail=f"Not authorized to {action}")
    return prod


@app.post("/api/products", response_model=dict, status_code=201)
def create_product(payload: ProductCreate, user: AuthUser = Depends(require_role("seller", "admin"))):
    shop = get_owned_shop(user)
    if not shop:
        raise HTTPException(status_code=400, detail="You must create a shop first before adding products")
    shop_id = str(shop["_id"])
    product = Product(
        **payload.model_dump(),
        shop_id=shop_id,
        owner_id=user.id,
        tags=product_tags(payload.name, payload.description),
    )
    product_id = create_document("product", product)
    orders.refresh_shop_stats(db, shop_id)
    return product_to_json(db["product"].find_one({"_id": ObjectId(product_id)}))


@app.get("/api/products/my-products", response_model=List[dict])
def my_products(
    status: Literal["all", "active", "inactive"] = Query("all"),
    user: AuthUser = Depends(require_role("seller", "admin")),
):
    query = {"owner_id": user.id}
    if status != "all":
        query["is_active"] = status == "active"
    return [product_to_json(p) for p in get_documents("product", query)]


@app.get("/api/products/{product_id}", response_model=dict)
def get_product(product_id: str):
    prod = db["product"].find_one({"_id": to_object_id(product_id, "Product not found")})
    if not prod or not prod.get("is_active"):
        raise HTTPException(status_code=404, detail="Product not found")
    return product_to_json(prod)


@app.put("/api/products/{product_id}", response_model=dict)
def update_product(product_id: str, payload: ProductUpdate, user: AuthUser = Depends(auth_dependency)):
    prod = load_product_for_owner(product_id, user, "update this product")
    update = payload.model_dump(exclude_none=True)
    if "name" in update or "description" in update:
        update["tags"] = product_tags(update.get("name", prod["name"]), update.get("description", prod["description"]))
    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": prod["_id"]}, {"$set": update})
    if "is_active" in update:
        orders.refresh_shop_stats(db, prod["shop_id"])
    return product_to_json(db["product"].find_one({"_id": prod["_id"]}))


@app.delete("/api/products/{product_id}", response_model=dict)
def delete_product(product_id: str, user: AuthUser = Depends(auth_dependency)):
    prod = load_product_for_owner(product_id, user, "delete this product")
    db["product"].update_one({"_id": prod["_id"]}, {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc)}})
    orders.refresh_shop_stats(db, prod["shop_id"])
    return {"message": "Product deleted successfully"}


# -------------------- Orders --------------------

def load_order_for(order_id: str, user: AuthUser, buyer: bool = True, seller: bool = True) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order not found")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if user.is_admin:
        return order
    if buyer and order.get("user_id") == user.id:
        return order
    if seller:
        shop = db["shop"].find_one({"_id": ObjectId(order["shop_id"])})
        if shop and shop.get("owner_id") == user.id:
            return order
    raise HTTPException(status_code=403, detail="Not authorized to access this order")


@app.post("/api/orders", response_model=dict, status_code=201)
def create_order(
    payload: OrderCreate,
    response: Response,
    idempotency_key: Optional[str] = Header(None),
    user: AuthUser = Depends(auth_dependency),
):
    order, created = orders.place_order(db, user.id, payload, idempotency_key=idempotency_key)
    if not created:
        response.status_code = 200
    return order_to_json(order)


@app.get("/api/orders/my-orders", response_model=List[dict])
def my_orders(status: Optional[str] = Query(None), user: AuthUser = Depends(auth_dependency)):
    query = {"user_id": user.id}
    if status:
        query["status"] = status
    return [order_to_json(o) for o in get_documents("order", query)]


@app.get("/api/orders/shop-orders", response_model=List[dict])
def shop_orders(status: Optional[str] = Query(None), user: AuthUser = Depends(require_role("seller", "admin"))):
    shop = get_owned_shop(user)
    if not shop:
        raise HTTPException(status_code=400, detail="You must have a shop to view shop orders")
    query = {"shop_id": str(shop["_id"])}
    if status:
        query["status"] = status
    return [order_to_json(o) for o in get_documents("order", query)]


@app.get("/api/orders/stats", response_model=dict)
def order_stats(user: AuthUser = Depends(require_role("seller", "admin"))):
    if user.role == "seller":
        shop = get_owned_shop(user)
        if not shop:
            raise HTTPException(status_code=400, detail="You must have a shop to view order statistics")
        return orders.order_stats(db, shop_id=str(shop["_id"]))
    return orders.order_stats(db)


@app.get("/api/orders/{order_id}", response_model=dict)
def get_order(order_id: str, user: AuthUser = Depends(auth_dependency)):
    return order_to_json(load_order_for(order_id, user))


@app.get("/api/orders/{order_id}/timeline", response_model=List[dict])
def get_order_timeline(order_id: str, user: AuthUser = Depends(auth_dependency)):
    order = load_order_for(order_id, user)
    return [doc_to_json(e) for e in order.get("timeline", [])]


@app.put("/api/orders/{order_id}/status", response_model=dict)
def update_order_status(order_id: str, payload: OrderStatusUpdate, user: AuthUser = Depends(auth_dependency)):
    order = load_order_for(order_id, user, buyer=False)
    updated = orders.transition(db, order, payload.status, user.id, note=payload.note)
    return order_to_json(updated)


@app.put("/api/orders/{order_id}/cancel", response_model=dict)
def cancel_order(order_id: str, user: AuthUser = Depends(auth_dependency)):
    order = load_order_for(order_id, user, seller=False)
    updated = orders.cancel(db, order, user.id)
    return {"message": "Order cancelled successfully", "order": order_to_json(updated)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
