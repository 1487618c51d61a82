import time, jwt
from dataclasses import dataclass

from common.error_handling import InvalidTokenError

ALGO = "HS256"


@dataclass(frozen=True)
class TokenClaims:
    account: str
    index: int


class TokenCodec:
    """Signed bearer tokens binding a client to one receiving account."""

    def __init__(self, secret: str, issuer: str, ttl_seconds: int):
        self.secret = secret
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds

    def issue(self, account: str, index: int) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "sub": account,
            "idx": index,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return jwt.encode(payload, self.secret, algorithm=ALGO)

    def parse(self, token: str) -> TokenClaims:
        if not token:
            raise InvalidTokenError("missing token")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGO],
                options={"require": ["exp", "iat", "iss", "sub"]},
                issuer=self.issuer,
            )
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"invalid token: {e}")
        try:
            return TokenClaims(account=claims["sub"], index=int(claims["idx"]))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token: malformed claims")
