"""
API server entrypoint.

    python -m marketbill.serve [--host 0.0.0.0] [--port 8000]
"""
import argparse
import sys
from typing import List, Optional

import uvicorn


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="marketbill API server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    args = parser.parse_args(argv)

    print(f"[marketbill] Server: http://{args.host}:{args.port}")
    try:
        uvicorn.run(
            "marketbill.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[marketbill] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
