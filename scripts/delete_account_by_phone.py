"""
Delete a store account and every registration record for a phone number, so the number can
register again (support / QA use).
Usage: python scripts/delete_account_by_phone.py <phone>
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tokoreg.database import SessionLocal  # noqa: E402
from tokoreg.models.account import Account  # noqa: E402
from tokoreg.models.one_time_code import OneTimeCode  # noqa: E402
from tokoreg.models.pending_registration import PendingRegistration  # noqa: E402
from tokoreg.models.registration_session import RegistrationSession  # noqa: E402
from tokoreg.services.identity import canonicalize, mask_identity, validate_identity  # noqa: E402


def main():
    raw = sys.argv[1] if len(sys.argv) > 1 else ""
    errors = validate_identity(raw)
    if errors:
        print("Usage: python scripts/delete_account_by_phone.py <phone>")
        for e in errors:
            print(f" - {e}")
        sys.exit(1)
    identity = canonicalize(raw)

    db = SessionLocal()
    try:
        counts = {
            "sessions": db.query(RegistrationSession).filter(RegistrationSession.identity == identity).delete(synchronize_session=False),
            "codes": db.query(OneTimeCode).filter(OneTimeCode.identity == identity).delete(synchronize_session=False),
            "pending": db.query(PendingRegistration).filter(PendingRegistration.identity == identity).delete(synchronize_session=False),
            "accounts": db.query(Account).filter(Account.identity == identity).delete(synchronize_session=False),
        }
        # Audit log entries are kept: the trail is append-only
        db.commit()
        summary = ", ".join(f"{n} {name}" for name, n in counts.items())
        print(f"Done. Deleted for {mask_identity(identity)}: {summary}")
    except Exception as e:
        db.rollback()
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
