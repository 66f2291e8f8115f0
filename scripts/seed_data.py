# Seed a local database with an admin, a demo user and a launch promo code
from sqlalchemy.orm import Session
from toolcredits.db import Base, SessionLocal, engine
from toolcredits.models import PromoCode, ReferralCode, User
from toolcredits.services.app_settings import set_app_setting
from toolcredits.services.credits import create_profile

def _user(db: Session, email: str, role: str = "user", credits: int = None) -> User:
    user = db.query(User).filter(User.email == email).first()
    if user:
        return user
    user = User(email=email, role=role)
    db.add(user); db.flush()
    create_profile(db, user, initial_credits=credits)
    db.commit()
    return user

def main():
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    try:
        admin = _user(db, "admin@example.com", role="admin", credits=1000)
        demo = _user(db, "demo@example.com")
        if not db.query(PromoCode).filter(PromoCode.code == "WELCOME50").first():
            db.add(PromoCode(code="WELCOME50", bonus_credits=50, max_uses=100))
        if not db.query(ReferralCode).filter(ReferralCode.user_id == demo.id).first():
            db.add(ReferralCode(user_id=demo.id, code="DEMO-REF"))
        db.commit()
        set_app_setting(db, "profit_margin", "40")
        print("Seeded users:", admin.email, demo.email)
    finally:
        db.close()

if __name__ == "__main__":
    main()
