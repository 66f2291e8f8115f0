# Print an access token for an existing account, e.g. an admin in production
import argparse

from toolcredits.auth import create_access_token
from toolcredits.db import SessionLocal
from toolcredits.models import User

def main():
    parser = argparse.ArgumentParser(description="Issue an access token for an account")
    parser.add_argument("email")
    parser.add_argument("--minutes", type=int, default=60, help="token lifetime")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == args.email).first()
        if user is None:
            raise SystemExit(f"No account for {args.email}")
        print(create_access_token(str(user.id), expires_minutes=args.minutes))
    finally:
        db.close()

if __name__ == "__main__":
    main()
