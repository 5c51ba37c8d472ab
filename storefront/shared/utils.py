from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header, Depends, Request
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
from bson import ObjectId
from bson.errors import InvalidId
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "storefront"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    ACCESS_COOKIE_NAME: str = "at"
    RATE_LIMIT_ENABLED: bool = True
    TRACKING_SWEEP_ENABLED: bool = True
    TRACKING_SWEEP_INTERVAL_SECONDS: int = 600
    MOCK_DELIVERY_AFTER_SECONDS: int = 120
    CART_MERGE_REPORT_SKIPPED: bool = False
    WRITE_CONFLICT_RETRIES: int = 3
    PAYMENT_PROVIDER: str = "TOSS"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for a 24-hex string, or None when malformed."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None

def to_mongo(data: Any) -> Any:
    """Recursively convert Decimals to floats so BSON can encode them."""
    if isinstance(data, Decimal):
        return float(data)
    if isinstance(data, dict):
        return {k: to_mongo(v) for k, v in data.items()}
    if isinstance(data, list):
        return [to_mongo(v) for v in data]
    return data

async def compare_and_set(collection, doc_id: ObjectId, version: int, fields: dict) -> bool:
    """
    Write `fields` only if the stored document still has `version`.
    Returns False when another writer got there first.
    """
    result = await collection.update_one(
        {"_id": doc_id, "version": version},
        {"$set": to_mongo(fields), "$inc": {"version": 1}}
    )
    return result.matched_count == 1

# --- Authentication ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedException()
    if not payload.get("sub"):
        raise UnauthorizedException()
    return payload

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None


# --- Exceptions ---
# `detail` always holds a stable machine-readable code, e.g. NOT_IN_CART.
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "BAD_REQUEST",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    @property
    def code(self) -> str:
        return self.detail

class BadRequestException(AppException):
    def __init__(self, detail: str = "BAD_REQUEST"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    def __init__(self, detail: str = "NOT_FOUND"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "UNAUTHORIZED"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "FORBIDDEN"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ConflictException(AppException):
    def __init__(self, detail: str = "WRITE_CONFLICT"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

# --- Decorators/Dependencies ---
async def require_auth(request: Request, authorization: Optional[str] = Header(None)) -> dict:
    token = None
    if authorization:
        scheme, _, param = authorization.partition(" ")
        if scheme.lower() == "bearer" and param:
            token = param
    if token is None:
        token = request.cookies.get(settings.ACCESS_COOKIE_NAME)
    if not token:
        raise UnauthorizedException()
    payload = verify_token(token)
    request.state.user_id = payload["sub"]
    return payload

async def require_admin(user: dict = Depends(require_auth)) -> dict:
    if user.get("role") != "ADMIN":
        raise ForbiddenException()
    return user
