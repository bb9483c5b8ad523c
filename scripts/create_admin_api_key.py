"""Create an admin API key for local operation (deliveries, key issuing)."""
import argparse

from readshare.db import get_sessionmaker, init_engine
from readshare.models.api_key import ApiKey, ApiScope
from readshare.utils.apikey import gen_key


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--name", default="dev-admin-key")
    args = parser.parse_args()

    init_engine()
    db = get_sessionmaker()()

    raw_token, prefix, key_hash = gen_key()
    try:
        api_key = ApiKey(
            name=args.name,
            prefix=prefix,
            key_hash=key_hash,
            scope=ApiScope.admin,
            is_active=True,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("Admin API key created. It is shown only once:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(id: {api_key.id}, scope: {api_key.scope.value})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
