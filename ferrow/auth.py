# ferrow/auth.py
"""
Customer accounts and back-office admins.

Customers sign in by email (no password); admins log in with a bcrypt
password and get an HS256 JWT. A password change stamps
`token_invalidated_at`, and any token issued before that is refused.
"""
from __future__ import annotations
import logging
import os
import secrets
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
import jwt
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError

from .errors import AuthError, ConflictError, NotFoundError, ValidationError
from .helpers import now_ts, to_iso, is_valid_email, new_id
from .infra.sql import GatedAsyncSession
from .model.orm import Admin, User

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
TOKEN_TTL_SECONDS = 24 * 3600
MIN_PASSWORD_LENGTH = 6
BCRYPT_ROUNDS = 10


# ----------------------------
# Passwords & tokens
# ----------------------------
def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def check_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # not a bcrypt hash
        return False


def issue_token(admin: Admin, secret: str = JWT_SECRET,
                now: Optional[float] = None) -> str:
    iat = int(now if now is not None else now_ts())
    return jwt.encode({
        "id": admin.id,
        "username": admin.username,
        "role": admin.role or "admin",
        "iat": iat,
        "exp": iat + TOKEN_TTL_SECONDS,
    }, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str = JWT_SECRET) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired. Please login again.") from None
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token. Please login again.") from None
    if not claims.get("id") or not claims.get("username"):
        raise AuthError("Invalid token payload. Please login again.")
    return claims


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError("No token provided")
    return authorization[len("Bearer "):].strip()


def admin_to_dict(a: Admin) -> Dict[str, Any]:
    return {
        "id": a.id,
        "username": a.username,
        "role": a.role or "admin",
        "created_at": to_iso(a.created_at),
        "updated_at": to_iso(a.updated_at),
    }


# ----------------------------
# Admins
# ----------------------------
async def create_admin(db: GatedAsyncSession, username: str, password: str,
                       role: str = "admin") -> Dict[str, Any]:
    now = now_ts()
    admin = Admin(
        id=new_id(),
        username=username.strip(),
        password=hash_password(password),
        role=role,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.gated():
            async with db.session.begin():
                db.session.add(admin)
    except IntegrityError:
        raise ConflictError("Username already exists") from None
    return admin_to_dict(admin)


async def login_admin(db: GatedAsyncSession, username: str, password: str,
                      secret: str = JWT_SECRET) -> Dict[str, Any]:
    if not username or not password:
        raise ValidationError("Missing credentials")
    async with db.gated():
        async with db.session.begin():
            admin = (await db.session.execute(
                select(Admin).where(Admin.username == username.strip())
            )).scalars().first()
    if admin is None or not check_password(password, admin.password):
        logger.info("admin login failed for %r", username)
        raise AuthError("Invalid username or password")
    return {"token": issue_token(admin, secret), "admin": admin_to_dict(admin)}


async def verify_admin(db: GatedAsyncSession, token: str,
                       secret: str = JWT_SECRET) -> Dict[str, Any]:
    claims = decode_token(token, secret)
    async with db.gated():
        async with db.session.begin():
            admin = await db.session.get(Admin, claims["id"])
    if admin is None:
        raise AuthError("Admin account not found. Please login again.",
                        status_code=404)
    if admin.username != claims["username"]:
        raise AuthError("Token mismatch. Please login again.")
    # iat has second resolution
    if admin.token_invalidated_at is not None and \
            int(claims.get("iat", 0)) < int(admin.token_invalidated_at):
        raise AuthError(
            "Token invalidated due to password change. Please login again."
        )
    return admin_to_dict(admin)


async def update_admin_profile(
    db: GatedAsyncSession,
    admin_id: str,
    username: Optional[str],
    current_password: Optional[str] = None,
    new_password: Optional[str] = None,
    secret: str = JWT_SECRET,
) -> Dict[str, Any]:
    username = (username or "").strip()
    if not username:
        raise ValidationError("Username is required",
                              {"username": "required"})
    if new_password:
        if not current_password:
            raise ValidationError("Current password is required",
                                  {"currentPassword": "required"})
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "New password must be at least 6 characters",
                {"newPassword": "too short"},
            )

    async with db.gated():
        async with db.session.begin():
            admin = await db.session.get(Admin, admin_id)
            if admin is None:
                raise NotFoundError("Admin not found")
            renamed = username != admin.username
            if renamed:
                taken = (await db.session.execute(
                    select(Admin.id).where(Admin.username == username,
                                           Admin.id != admin.id)
                )).first()
                if taken:
                    raise ValidationError("Username already exists",
                                          {"username": "taken"})
            if new_password:
                if not check_password(current_password, admin.password):
                    raise ValidationError(
                        "Current password is incorrect",
                        {"currentPassword": "incorrect"},
                    )
                admin.password = hash_password(new_password)
                admin.token_invalidated_at = now_ts()
            admin.username = username
            admin.updated_at = now_ts()

    if new_password:
        logger.info("admin %s changed password; tokens invalidated",
                    admin.id)
        return {
            "message": "Password updated successfully. Please login again "
                       "with your new password.",
            "requireReauth": True,
            "passwordChanged": True,
        }
    return {
        "message": "Profile updated successfully",
        "newToken": issue_token(admin, secret) if renamed else None,
        "admin": admin_to_dict(admin),
    }


# ----------------------------
# Customers
# ----------------------------
def user_to_dict(u: User, full: bool = False) -> Dict[str, Any]:
    out = {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "phone": u.phone,
        "email_verified": bool(u.email_verified),
    }
    if full:
        out["created_at"] = to_iso(u.created_at)
        out["updated_at"] = to_iso(u.updated_at)
    return out


async def signin_user(db: GatedAsyncSession, email: Optional[str],
                      name: Optional[str], phone: Optional[str] = None
                      ) -> Tuple[Dict[str, Any], bool]:
    """Upsert by lower-cased email. Returns (user, created)."""
    if not email or not name or not name.strip():
        raise ValidationError("Email and name are required")
    if not is_valid_email(email):
        raise ValidationError("Invalid email format", {"email": "invalid"})
    email = email.strip().lower()
    phone = (phone or "").strip() or None
    now = now_ts()

    async with db.gated():
        async with db.session.begin():
            user = (await db.session.execute(
                select(User).where(User.email == email)
            )).scalars().first()
            created = user is None
            if created:
                user = User(
                    id=new_id(),
                    email=email,
                    name=name.strip(),
                    phone=phone,
                    email_verified=False,
                    verification_token=secrets.token_urlsafe(32),
                    created_at=now,
                    updated_at=now,
                )
                db.session.add(user)
            else:
                user.name = name.strip()
                user.phone = phone
                user.updated_at = now
    if created:
        logger.info("new customer account %s", user.id)
    return user_to_dict(user), created


async def verify_email(db: GatedAsyncSession, token: str) -> str:
    """'verified' or 'already_verified'; NotFoundError for a bad token."""
    async with db.gated():
        async with db.session.begin():
            user = (await db.session.execute(
                select(User).where(User.verification_token == token)
            )).scalars().first()
            if user is None:
                raise NotFoundError("invalid_token")
            if user.email_verified:
                return "already_verified"
            user.email_verified = True
            user.verification_token = None
            user.updated_at = now_ts()
    return "verified"


async def get_user(db: GatedAsyncSession, user_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            user = await db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user_to_dict(user)


async def list_users(db: GatedAsyncSession, offset: int, limit: int,
                     search: Optional[str] = None
                     ) -> Tuple[List[Dict[str, Any]], int]:
    conds = []
    if search:
        pattern = f"%{search.lower()}%"
        conds.append(or_(
            func.lower(User.email).like(pattern),
            func.lower(User.name).like(pattern),
        ))
    async with db.gated():
        async with db.session.begin():
            total = (await db.session.execute(
                select(func.count()).select_from(User).where(*conds)
            )).scalar_one()
            rows = (await db.session.execute(
                select(User).where(*conds)
                .order_by(User.created_at.desc())
                .offset(offset).limit(limit)
            )).scalars().all()
    return [user_to_dict(u, full=True) for u in rows], int(total)
