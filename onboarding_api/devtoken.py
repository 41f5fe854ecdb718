import argparse
import time
from typing import Any, Dict, List, Optional

import jwt

from .rbac import ADMIN, OPERATOR
from .settings import Settings, load_settings


def build_claims(settings: Settings, *, role: str, subject: Optional[str] = None, ttl: int = 3600) -> Dict[str, Any]:
    now = int(time.time())
    groups: List[str] = [role]
    return {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + ttl,
        "sub": subject or f"dev-{role}",
        "email": f"{role}@example.com",
        "cognito:groups": groups,
    }


def issue_token(settings: Settings, *, role: str = OPERATOR, subject: Optional[str] = None, ttl: int = 3600) -> str:
    if not settings.jwt_secret:
        raise SystemExit("ONBOARDING_JWT_SECRET is required")
    return jwt.encode(build_claims(settings, role=role, subject=subject, ttl=ttl), settings.jwt_secret, algorithm="HS256")


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a dev JWT for the onboarding API (auth disabled mode).")
    parser.add_argument("--role", choices=[ADMIN, OPERATOR], default=OPERATOR)
    parser.add_argument("--subject")
    parser.add_argument("--ttl", type=int, default=3600)
    args = parser.parse_args()
    print(issue_token(load_settings(), role=args.role, subject=args.subject, ttl=args.ttl))


if __name__ == "__main__":
    main()
