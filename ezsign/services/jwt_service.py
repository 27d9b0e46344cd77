"""
JWT token service for operator authentication.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from ezsign.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def __init__(
        self,
        secret_key: str = settings.JWT_SECRET_KEY,
        algorithm: str = settings.JWT_ALGORITHM,
        expiration_minutes: int = settings.JWT_EXPIRATION_MINUTES,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expiration_minutes = expiration_minutes

    def create_token(self, user_id: str, role: str, email: str) -> str:
        """
        Create a JWT token with user context.

        Args:
            user_id: User's unique ID
            role: User role (admin or member)
            email: User's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=self.expiration_minutes)

        payload = {
            "sub": user_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
