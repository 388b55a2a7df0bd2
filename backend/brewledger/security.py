import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

from dotenv import load_dotenv

load_dotenv(dotenv_path='.env')

SECRET_KEY = os.getenv('SECRET_KEY', 'changeme-secret')
ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', '720'))


def create_access_token(subject: str, brewery_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Bearer token naming the user (`sub`) and the brewery they act for."""
    now = datetime.now(timezone.utc)
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"sub": subject, "brewery_id": brewery_id, "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        raise
