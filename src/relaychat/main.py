"""CLI entrypoint for running the relay with uvicorn."""

from __future__ import annotations

import argparse

import uvicorn


def main() -> None:
    """Run the ASGI server."""

    parser = argparse.ArgumentParser(description="Run the chat completion relay.")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    uvicorn.run(
        "relaychat.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
