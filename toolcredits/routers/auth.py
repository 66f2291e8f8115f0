from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from ..db import get_db
from ..config import is_production
from ..exceptions import AuthenticationError, PermissionDenied
from ..models import User
from ..schemas import UserCreate, UserOut, Token
from ..auth import create_access_token
from ..services.credits import create_profile

router = APIRouter()

@router.post('/signup', response_model=UserOut)
def signup(payload: UserCreate, db: Session = Depends(get_db)):
    existing = db.query(User).filter(User.email == payload.email).first()
    if existing:
        return existing
    user = User(email=payload.email)
    db.add(user); db.flush()
    profile = create_profile(db, user)
    profile.full_name = payload.full_name
    db.commit(); db.refresh(user)
    return user

@router.post('/login', response_model=Token)
def login(payload: UserCreate, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.email).first()
    if not user:
        raise AuthenticationError("Invalid credentials")
    # email-only login; admin tokens come from scripts/issue_token.py in production
    if user.is_admin and is_production():
        raise PermissionDenied("Admin login is disabled")
    token = create_access_token(str(user.id))
    return Token(access_token=token)
