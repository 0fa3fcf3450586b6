"""Bearer-token auth for the practice API.

Every issued token carries a ``jti`` naming a row in ``auth_sessions``; a token
is only honoured while that row exists, so deleting the row revokes it.
Guests skip the password check but still get a session row.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AuthSession, AuthUser
from ..settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

GUEST_NAMES = ("guest", "guests")
# tokens minted with expiry disabled still need an exp claim
_UNLIMITED_TOKEN_LIFETIME = timedelta(days=30)


def _unauthorized() -> HTTPException:
	return HTTPException(status_code=401, detail="Could not validate credentials")


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	username: str
	guest: bool = False


class RegisterRequest(BaseModel):
	username: str
	password: str
	email: Optional[str] = None


def _bcrypt_secret(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	return password.encode('utf-8')[:72].decode('utf-8', errors='ignore')


def hash_password(password: str) -> str:
	return pwd_context.hash(_bcrypt_secret(password))


def verify_password(password: str, password_hash: str) -> bool:
	return pwd_context.verify(_bcrypt_secret(password), password_hash)


def check_credentials(db: Session, username: str, password: str) -> Optional[User]:
	if username.lower() in GUEST_NAMES:
		return User(username=username.lower(), guest=True)
	row = db.get(AuthUser, username)
	if row is None or not verify_password(password, row.password_hash):
		return None
	return User(username=row.username)


def token_lifetime() -> timedelta:
	minutes = settings.access_token_expire_minutes
	return timedelta(minutes=minutes) if minutes > 0 else _UNLIMITED_TOKEN_LIFETIME


def encode_token(username: str, session_id: str) -> str:
	claims = {
		"sub": username,
		"jti": session_id,
		"exp": datetime.now(timezone.utc) + token_lifetime(),
	}
	return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Tuple[str, str]:
	"""Return ``(username, session_id)`` or raise 401."""
	try:
		claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise _unauthorized()
	username = claims.get("sub")
	session_id = claims.get("jti")
	if not username or not session_id:
		raise _unauthorized()
	return username, session_id


def open_auth_session(db: Session, username: str) -> str:
	session_id = uuid.uuid4().hex
	try:
		db.add(AuthSession(session_id=session_id, username=username))
		db.commit()
	except Exception:
		db.rollback()
		logger.exception("Could not open auth session for %s", username)
		raise HTTPException(status_code=500, detail="Could not create session")
	return session_id


def _live_session(db: Session, username: str, session_id: str) -> AuthSession:
	try:
		row = db.get(AuthSession, session_id)
		if row is None or row.username != username:
			raise _unauthorized()
		row.last_activity_at = datetime.utcnow()
		db.commit()
	except HTTPException:
		raise
	except Exception:
		db.rollback()
		logger.exception("Session lookup failed")
		# fail closed
		raise _unauthorized()
	return row


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	username, session_id = decode_token(token)
	_live_session(db, username, session_id)
	return User(username=username, guest=username in GUEST_NAMES)


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = check_credentials(db, form_data.username, form_data.password)
	if user is None:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	session_id = open_auth_session(db, user.username)
	logger.info("Issued token for %s%s", user.username, " (guest)" if user.guest else "")
	return Token(access_token=encode_token(user.username, session_id))


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	username, session_id = decode_token(token)
	row = _live_session(db, username, session_id)
	db.delete(row)
	db.commit()
	return {"status": "success"}


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = req.username.strip()
	email = (req.email or "").strip() or None
	if not username or not req.password:
		raise HTTPException(status_code=400, detail="username and password are required")
	if not 3 <= len(username) <= 128:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	if username.lower() in GUEST_NAMES:
		raise HTTPException(status_code=400, detail="username is reserved")
	if db.get(AuthUser, username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	db.add(AuthUser(username=username, password_hash=hash_password(req.password), email=email))
	db.commit()
	logger.info("Registered %s", username)
	return {"ok": True}
