import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import jwt

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def verify_token(authorization: str = Header(None)) -> str:
    """Return the caller's user id (the ``sub`` claim of a bearer JWT)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        user_id = claims.get("sub")
        if not user_id:
            raise ValueError("token has no subject")
        return str(user_id)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
