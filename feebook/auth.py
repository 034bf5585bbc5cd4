from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from feebook.config import jwt_secret


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        return jwt.decode(token, jwt_secret(), algorithms=["HS256"])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_role(*roles):
    def checker(claims: dict = Depends(verify_token)):
        if claims.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Not allowed")
        return claims

    return checker
