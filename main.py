import json
import logging
import math
import os
import re
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError
from bson import ObjectId
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import media
from database import db, create_document, ensure_indexes
from schemas import (
    Product as ProductSchema,
    ProductUpdate,
    Review as ReviewSchema,
    ReviewIn,
    ReviewUpdate,
    User as UserSchema,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

APP_ENV = os.getenv("APP_ENV", "development")
FRONTEND_BUILD_DIR = os.getenv(
    "FRONTEND_BUILD_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "client", "build")
)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 12

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if db is not None:
        ensure_indexes()
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="Waste to Wonder Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Error handling -----

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def _validation_message(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "Invalid value"))
    return ", ".join(parts)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "message": _validation_message(exc.errors())})


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"success": False, "message": _validation_message(exc.errors())})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"success": False, "message": "Duplicate field value entered"})


@app.exception_handler(media.MediaUploadError)
async def media_error_handler(request: Request, exc: media.MediaUploadError):
    return JSONResponse(status_code=502, content={"success": False, "message": str(exc)})


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server Error"})


# ----- Utilities -----

def collection(name: str):
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db[name]


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    doc.pop("password_hash", None)
    return doc


def ensure_object_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return ObjectId(id_str)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def can_modify(user: dict, owner_id: Optional[str]) -> bool:
    """Owners and admins may change a resource."""
    if user.get("role") == "admin":
        return True
    return owner_id is not None and str(owner_id) == user.get("id")


def populate_user(user_id: Optional[str], fields: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
    if not user_id or not ObjectId.is_valid(str(user_id)):
        return None
    user = collection("user").find_one({"_id": ObjectId(str(user_id))}, {f: 1 for f in fields})
    return serialize_doc(user) if user else None


def populate_reviews(review_ids: List[str], with_user: bool = False) -> List[Dict[str, Any]]:
    ids = [ObjectId(r) for r in review_ids if ObjectId.is_valid(r)]
    if not ids:
        return []
    reviews = []
    for doc in collection("review").find({"_id": {"$in": ids}}).sort("created_at", -1):
        review = serialize_doc(doc)
        if with_user:
            review["user"] = populate_user(review.get("user"), ("name", "avatar"))
        reviews.append(review)
    return reviews


def _positive_int(value: Optional[str], default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


# ----- Auth -----

class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = "customer"
    avatar: Optional[str] = None
    bio: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


def get_current_user(authorization: Optional[str] = Header(default=None)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = collection("user").find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return serialize_doc(user)


def require_roles(*roles: str):
    def checker(current_user: dict = Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"User role {current_user.get('role')} is not authorized to access this route",
            )
        return current_user
    return checker


# Routes
@app.get("/")
def read_root():
    return {"message": "Waste to Wonder Marketplace API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = db.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput):
    if payload.role == "admin":
        raise HTTPException(status_code=403, detail="Cannot self-register as admin")
    users = collection("user")
    if users.find_one({"email": payload.email.lower()}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_model = UserSchema(
        name=payload.name,
        email=payload.email.lower(),
        password_hash=hash_password(payload.password),
        role=payload.role,
        avatar=payload.avatar,
        bio=payload.bio,
    )
    user_id = create_document("user", user_model)
    logger.info("Registered user %s as %s", user_id, user_model.role)
    user = serialize_doc(users.find_one({"_id": ObjectId(user_id)}))
    return TokenResponse(access_token=create_access_token({"sub": user_id}), user=user)


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginInput):
    user = collection("user").find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=serialize_doc(user))


@app.get("/api/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": current_user}


@app.get("/api/users/{user_id}")
def get_user_profile(user_id: str):
    ensure_object_id(user_id)
    user = populate_user(user_id, ("name", "avatar", "bio", "role"))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": user}


# ----- Ratings -----

_rating_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
_rating_locks_guard = threading.Lock()


def _rating_lock(product_id: str) -> threading.Lock:
    with _rating_locks_guard:
        return _rating_locks[product_id]


def drop_rating_lock(product_id: str):
    with _rating_locks_guard:
        _rating_locks.pop(product_id, None)


def recompute_average_rating(product_id: str) -> Optional[float]:
    """Recalculate a product's average_rating from all of its reviews.

    Runs a full re-read under a per-product lock so concurrent review
    mutations within this process always leave the latest mean behind.
    Returns None when the product no longer exists.
    """
    with _rating_lock(product_id):
        ratings = [r.get("rating", 0) for r in collection("review").find({"product": product_id}, {"rating": 1})]
        average = sum(ratings) / len(ratings) if ratings else 0
        res = collection("product").update_one(
            {"_id": ObjectId(product_id)}, {"$set": {"average_rating": average}}
        )
    if res.matched_count == 0:
        return None
    logger.debug("Product %s average_rating=%s over %d reviews", product_id, average, len(ratings))
    return average


# ----- Products -----

LIST_FIELDS = ("materials_used", "colors")
PROTECTED_FIELDS = ("seller", "images", "reviews", "average_rating", "created_at", "updated_at", "id", "_id")


async def read_product_payload(request: Request) -> Tuple[Dict[str, Any], List[UploadFile]]:
    """Read product fields and image files from a multipart form or a JSON body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        files = [f for f in form.getlist("images") if isinstance(f, UploadFile)]
        data: Dict[str, Any] = {}
        for key in set(form.keys()):
            if key == "images":
                continue
            if key in LIST_FIELDS:
                data[key] = [v for v in form.getlist(key) if isinstance(v, str)]
            elif key.startswith("sustainability_info."):
                data.setdefault("sustainability_info", {})[key.split(".", 1)[1]] = form[key]
            else:
                data[key] = form[key]
    else:
        files = []
        body = await request.body()
        if not body:
            data = {}
        else:
            try:
                data = json.loads(body)
            except ValueError:
                raise HTTPException(status_code=400, detail="Malformed JSON body")
            if not isinstance(data, dict):
                raise HTTPException(status_code=400, detail="Request body must be an object")
    if len(files) > media.MAX_IMAGES:
        raise HTTPException(status_code=400, detail=f"At most {media.MAX_IMAGES} images are allowed")
    for key in PROTECTED_FIELDS:
        data.pop(key, None)
    return data, files


def find_product_or_404(product_id: str) -> Dict[str, Any]:
    product = collection("product").find_one({"_id": ensure_object_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
):
    query: Dict[str, Any] = {}
    if category:
        query["category"] = category
    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}

    sort_spec = [("created_at", -1)]
    if sort:
        field, _, direction = sort.partition(":")
        if field:
            sort_spec = [(field, -1 if direction == "desc" else 1)]

    page_num = _positive_int(page, DEFAULT_PAGE)
    limit_num = _positive_int(limit, DEFAULT_LIMIT)
    skip = (page_num - 1) * limit_num

    products = collection("product")
    total = products.count_documents(query)
    cursor = products.find(query).sort(sort_spec).skip(skip).limit(limit_num)

    items = []
    for doc in cursor:
        item = serialize_doc(doc)
        item["seller"] = populate_user(item.get("seller"), ("name", "avatar"))
        item["reviews"] = populate_reviews(item.get("reviews", []))
        items.append(item)

    return {
        "success": True,
        "count": len(items),
        "page": page_num,
        "pages": math.ceil(total / limit_num),
        "data": items,
    }


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = serialize_doc(find_product_or_404(product_id))
    product["seller"] = populate_user(product.get("seller"), ("name", "avatar", "bio"))
    product["reviews"] = populate_reviews(product.get("reviews", []), with_user=True)
    return {"success": True, "data": product}


@app.post("/api/products", status_code=201)
async def create_product(request: Request, current_user: dict = Depends(require_roles("seller", "admin"))):
    products = collection("product")
    data, files = await read_product_payload(request)
    data["seller"] = current_user["id"]
    # validate before anything is sent to the media store
    ProductSchema(**data)

    images = await media.upload_images(files)
    product = ProductSchema(**data, images=images)

    product_id = create_document("product", product)
    logger.info("Product %s created by %s with %d images", product_id, current_user["id"], len(images))
    return {"success": True, "data": serialize_doc(products.find_one({"_id": ObjectId(product_id)}))}


@app.put("/api/products/{product_id}")
async def update_product(
    product_id: str, request: Request, current_user: dict = Depends(require_roles("seller", "admin"))
):
    products = collection("product")
    existing = find_product_or_404(product_id)
    if not can_modify(current_user, existing.get("seller")):
        raise HTTPException(status_code=401, detail="Not authorized")

    data, files = await read_product_payload(request)
    changes = {k: v for k, v in ProductUpdate(**data).model_dump(exclude_unset=True).items() if v is not None}
    merged = {k: v for k, v in existing.items() if k != "_id"}
    sustainability = changes.pop("sustainability_info", None) or {}
    merged.update(changes)
    merged["sustainability_info"] = {**(existing.get("sustainability_info") or {}), **sustainability}
    ProductSchema.model_validate(merged)
    # nested fields are set by path so untouched siblings survive
    for key, value in sustainability.items():
        changes[f"sustainability_info.{key}"] = value

    if files:
        new_images = await media.upload_images(files)
        changes["images"] = list(existing.get("images", [])) + new_images
        merged["images"] = changes["images"]
        ProductSchema.model_validate(merged)

    changes["updated_at"] = datetime.now(timezone.utc)
    products.update_one({"_id": existing["_id"]}, {"$set": changes})
    logger.info("Product %s updated by %s", product_id, current_user["id"])
    return {"success": True, "data": serialize_doc(products.find_one({"_id": existing["_id"]}))}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_roles("seller", "admin"))):
    product = find_product_or_404(product_id)
    if not can_modify(current_user, product.get("seller")):
        raise HTTPException(status_code=401, detail="Not authorized")

    pid = str(product["_id"])
    removed = collection("review").delete_many({"product": pid})
    collection("product").delete_one({"_id": product["_id"]})
    drop_rating_lock(pid)
    logger.info("Product %s deleted by %s along with %d reviews", product_id, current_user["id"], removed.deleted_count)

    failed = media.delete_images([img.get("public_id") for img in product.get("images", [])])
    if failed:
        logger.warning("Product %s removed but %d remote images were left behind: %s", pid, len(failed), failed)
    return {"success": True, "data": {}}


# ----- Reviews -----

def find_review_or_404(review_id: str) -> Dict[str, Any]:
    review = collection("review").find_one({"_id": ensure_object_id(review_id)})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@app.get("/api/products/{product_id}/reviews")
def get_reviews(product_id: str):
    pid = str(ensure_object_id(product_id))
    reviews = []
    for doc in collection("review").find({"product": pid}):
        review = serialize_doc(doc)
        review["user"] = populate_user(review.get("user"), ("name", "avatar"))
        reviews.append(review)
    return {"success": True, "count": len(reviews), "data": reviews}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewIn, current_user: dict = Depends(get_current_user)):
    product = find_product_or_404(product_id)
    pid = str(product["_id"])

    reviews = collection("review")
    if reviews.find_one({"user": current_user["id"], "product": pid}):
        raise HTTPException(status_code=400, detail="Already reviewed this product")

    review = ReviewSchema(product=pid, user=current_user["id"], rating=payload.rating, review=payload.review)
    try:
        review_id = create_document("review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Already reviewed this product")

    collection("product").update_one({"_id": product["_id"]}, {"$addToSet": {"reviews": review_id}})
    recompute_average_rating(pid)
    logger.info("Review %s added to product %s by %s", review_id, pid, current_user["id"])
    return {"success": True, "data": serialize_doc(reviews.find_one({"_id": ObjectId(review_id)}))}


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, current_user: dict = Depends(get_current_user)):
    review = find_review_or_404(review_id)
    if not can_modify(current_user, review.get("user")):
        raise HTTPException(status_code=401, detail="Not authorized")

    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    ReviewSchema.model_validate({**review, **changes})
    if changes:
        changes["updated_at"] = datetime.now(timezone.utc)
        collection("review").update_one({"_id": review["_id"]}, {"$set": changes})

    recompute_average_rating(review["product"])
    logger.info("Review %s updated by %s", review_id, current_user["id"])
    return {"success": True, "data": serialize_doc(collection("review").find_one({"_id": review["_id"]}))}


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user)):
    review = find_review_or_404(review_id)
    if not can_modify(current_user, review.get("user")):
        raise HTTPException(status_code=401, detail="Not authorized")

    product_id = review["product"]
    collection("review").delete_one({"_id": review["_id"]})
    collection("product").update_one({"_id": ObjectId(product_id)}, {"$pull": {"reviews": str(review["_id"])}})
    recompute_average_rating(product_id)
    logger.info("Review %s deleted by %s", review_id, current_user["id"])
    return {"success": True, "data": {}}


# ----- Frontend -----

if APP_ENV == "production" and os.path.isdir(FRONTEND_BUILD_DIR):
    _build_root = os.path.realpath(FRONTEND_BUILD_DIR)

    @app.get("/{full_path:path}", include_in_schema=False)
    def serve_frontend(full_path: str):
        if full_path.startswith("api/"):
            raise HTTPException(status_code=404, detail="Not Found")
        candidate = os.path.realpath(os.path.join(_build_root, full_path))
        if full_path and candidate.startswith(_build_root + os.sep) and os.path.isfile(candidate):
            return FileResponse(candidate)
        return FileResponse(os.path.join(_build_root, "index.html"))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
