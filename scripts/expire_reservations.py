from videogen.config import settings
from videogen.db import init_db
from videogen.ledger import expire_stale_reservations
from videogen.logging import configure_logging


def main() -> None:
    configure_logging()
    init_db()
    expired = expire_stale_reservations(settings.reservation_expiry_hours)
    print(f"Expired reservations returned: {expired}")


if __name__ == "__main__":
    main()
