"""
Tiny helper script to create the LocalBuy database before running the apps.
Usage: python init_db.py
"""

from database import DATABASE_URL, DEMO_PASSWORD, init_db


def main() -> None:
    init_db()
    print(f"Database ready at {DATABASE_URL}")
    print(f"Demo accounts (admin@, grocer@, hardware@, customer@localbuy.test) use the password {DEMO_PASSWORD}")


if __name__ == "__main__":
    main()
