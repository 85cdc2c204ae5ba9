"""Run the matchmaking server: ``python -m soloq [host] [port]``."""

from __future__ import annotations

import sys

import uvicorn


def main(argv=None) -> None:
    args = sys.argv[1:] if argv is None else argv
    host = args[0] if args else "0.0.0.0"
    port = int(args[1]) if len(args) > 1 else 8000
    uvicorn.run("soloq.server:app", host=host, port=port)


if __name__ == "__main__":
    main()
