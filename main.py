"""AI Visual Novel: dev launcher. Starts the API server."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="AI Visual Novel dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data or $DATA_DIR)")
    parser.add_argument("--demo", action="store_true",
                        help="Wipe characters and chats and create the demo character")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # The app factory reads DATA_DIR, so the server and --demo agree on the directory
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())

    if args.demo:
        from visual_novel.config import load_config
        from visual_novel.demo import create_demo_data
        from visual_novel.storage import Storage

        character = create_demo_data(Storage(load_config().data_dir))
        print(f"Created demo character {character.name} ({character.id})")

    print(f"Starting backend on http://localhost:{args.port} ...")
    uvicorn.run(
        "visual_novel.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
