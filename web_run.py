from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


def _bootstrap_src() -> None:
    root = Path(__file__).resolve().parent
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Serve the textile trade finance simulator API")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = ap.parse_args(argv)

    _bootstrap_src()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    import uvicorn

    uvicorn.run("tradesim.webapp:app", host=args.host, port=int(args.port), reload=False, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
