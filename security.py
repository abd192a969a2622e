import json
import hmac
import time
import base64
import hashlib
import secrets
from typing import Optional, Tuple

from config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_SECRET, PWD_SALT


class TokenError(ValueError):
    pass


# Bearer tokens are HS256 JWTs signed with JWT_SECRET
def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def _sign(signing_input: bytes, secret: str) -> str:
    return _b64url_encode(hmac.new(secret.encode(), signing_input, hashlib.sha256).digest())


def jwt_encode(payload: dict, secret: str = JWT_SECRET) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    return f"{header_b64}.{payload_b64}.{_sign(signing_input, secret)}"


def jwt_decode(token: str, secret: str = JWT_SECRET) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split('.')
    except ValueError:
        raise TokenError("Malformed token")
    if not hmac.compare_digest(_sign(f"{header_b64}.{payload_b64}".encode(), secret), sig_b64):
        raise TokenError("Invalid signature")
    try:
        payload = json.loads(_b64url_decode(payload_b64))
    except ValueError:
        raise TokenError("Malformed payload")
    if "exp" in payload and time.time() > payload["exp"]:
        raise TokenError("Token expired")
    return payload


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    minutes = expires_minutes if expires_minutes is not None else ACCESS_TOKEN_EXPIRE_MINUTES
    return jwt_encode({"sub": user_id, "exp": int(time.time()) + minutes * 60})


def hash_password(password: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode(), PWD_SALT.encode(), 100_000).hex()


def verify_password(password: str, hashed: str) -> bool:
    return hmac.compare_digest(hash_password(password), hashed)


# Password reset tokens: the raw token goes to the user, only its digest is stored
def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def new_reset_token() -> Tuple[str, str]:
    token = secrets.token_urlsafe(32)
    return token, hash_reset_token(token)
