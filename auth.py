import secrets
from dataclasses import dataclass

from sqlalchemy import select
from werkzeug.security import check_password_hash, generate_password_hash

from errors import Forbidden, Unauthenticated, ValidationError
from models import ROLES, AuthToken, User


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str


def create_user(session, name, email, password, role="customer", phone=None):
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    email = email.strip().lower()
    if session.execute(select(User).where(User.email == email)).scalar_one_or_none():
        raise ValidationError("Email already in use")
    user = User(
        name=name.strip(),
        email=email,
        password_hash=generate_password_hash(password),
        role=role,
        phone=phone,
    )
    session.add(user)
    session.commit()
    return user


def issue_token(session, user):
    token = AuthToken(token=secrets.token_urlsafe(32), user_id=user.id)
    session.add(token)
    session.commit()
    return token.token


def login(session, email, password):
    user = session.execute(
        select(User).where(User.email == email.strip().lower())
    ).scalar_one_or_none()
    if user is None or not check_password_hash(user.password_hash, password):
        raise Unauthenticated("Invalid email or password")
    return user, issue_token(session, user)


def bearer_token(authorization):
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_token(session, token) -> Principal:
    if not token:
        raise Unauthenticated("Not authorized, no token provided")
    record = session.get(AuthToken, token)
    if record is None or record.user is None:
        raise Unauthenticated("Not authorized, invalid token")
    return Principal(user_id=record.user_id, role=record.user.role)


def require_role(principal, *roles):
    if principal.role not in roles:
        raise Forbidden(f"User role '{principal.role}' is not authorized to access this route")
    return principal


def user_to_dict(user):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "phone": user.phone,
    }
