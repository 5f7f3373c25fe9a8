from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from cinepos.schemas.common import Token
from cinepos.util.security import create_token, verify_pw
from cinepos.errors import AuthenticationFailed
from cinepos.models.core import User
from cinepos.db import get_db

router = APIRouter(prefix="/auth", tags=["auth"])

@router.post("/login", response_model=Token)
def login(mobile: str, password: str, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.mobile == mobile).first()
    if not user or not user.active or not verify_pw(user.pass_hash, password):
        raise AuthenticationFailed("Invalid credentials")
    return Token(access_token=create_token(user.id, user.theater_id, user.role))
