import argparse
import os
import sys

import uvicorn

from gvstorage.logger import setup_logging
from gvstorage import app


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Serve the gvstorage backup and restore API.")
    parser.add_argument("--host", default=os.getenv("GVSTORAGE_HOST", "127.0.0.1"),
                        help="Interface to bind. Use 0.0.0.0 to reach the library from other devices on the LAN.")
    parser.add_argument("--port", type=int, default=int(os.getenv("GVSTORAGE_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Restart the server when source files change.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    setup_logging("server", debug=args.verbose)

    # A PyInstaller bundle has no source tree to watch, so it always gets the app object.
    if getattr(sys, "frozen", False) or not args.reload:
        uvicorn.run(app, host=args.host, port=args.port)
    else:
        uvicorn.run("gvstorage:app", host=args.host, port=args.port, reload=True)


if __name__ == "__main__":
    main()
