from __future__ import annotations

import argparse

import uvicorn


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Serve the tenant state store over HTTP.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=3500)
    args = parser.parse_args()
    # Factory mode builds the app (and its container) inside the server's event loop.
    uvicorn.run("tenantstate.apps.api.main:create_app", factory=True, host=args.host, port=args.port)
