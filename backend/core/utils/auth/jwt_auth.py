"""
JWT Authentication utilities
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt

from core.config import Settings, settings as default_settings


class JWTManager:
    """
    Bearer token encode/decode. Tokens carry the user id in ``sub``.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or default_settings
        self.secret_key = settings.SECRET_KEY
        self.algorithm = settings.ALGORITHM
        self.expire_minutes = settings.ACCESS_TOKEN_EXPIRE_MINUTES

    def create_access_token(self, data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """
        Create JWT access token
        """
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=self.expire_minutes))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Verify and decode JWT token
        """
        if not self.secret_key:
            return None
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None

    def get_user_id_from_token(self, token: str) -> Optional[str]:
        payload = self.verify_token(token)
        if payload:
            return payload.get("sub")
        return None
