from dotenv import load_dotenv
load_dotenv()  # must be first: loads .env before Settings reads os.environ

import logging

from pydantic import ValidationError

from reqhive.config import Settings
from reqhive.state import AppState


def main():
    try:
        settings = Settings.from_env()
    except ValidationError as e:
        print(f"[reqhive] invalid configuration: {e}")
        raise SystemExit(1)

    logging.basicConfig(
        level=settings.log_level,
        format="[reqhive] %(levelname)s %(name)s: %(message)s",
    )

    try:
        state = AppState(settings)
    except OSError as e:
        print(f"[reqhive] cannot open collections directory {settings.collections_dir}: {e}")
        raise SystemExit(1)

    try:
        if settings.dry_run:
            print("[reqhive] dry run: changes will not be written to disk")
        if not state.ssl_verify:
            print("[reqhive] SSL verification disabled")

        collections = state.list_collections()
        print(f"[reqhive] {len(collections)} collection(s) in {state.collections_dir}")
        for meta in collections:
            print(f"  {meta.name:<40} {meta.readable_size:>10}  {meta.modified:%Y-%m-%d %H:%M}")
    finally:
        state.close()


if __name__ == '__main__':
    main()
