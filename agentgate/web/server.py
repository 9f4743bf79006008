from __future__ import annotations
import argparse
import uvicorn
from ..config import PROFILES, load_settings
from ..tools.logs import setup_logging
from .app import create_app

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="agentgate approval API (FastAPI)")
    parser.add_argument("--config", type=str, default="config", help="Config directory or file (default: ./config)")
    parser.add_argument("--profile", type=str, choices=PROFILES, default="standard", help="Config profile")
    parser.add_argument("--db", type=str, default=None, help="SQLite path (default: store.db_path)")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8765, help="Port (default: 8765)")
    args = parser.parse_args(argv)

    settings = load_settings(args.config, args.profile, overrides={"db_path": args.db})
    setup_logging(settings)
    app = create_app(
        db_path=settings.store.db_path,
        audit_path=settings.audit.chain_path,
        settings=settings,
    )

    uvicorn.run(app, host=args.host, port=int(args.port), log_level="info")

if __name__ == "__main__":
    main()
