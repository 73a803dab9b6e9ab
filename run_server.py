#!/usr/bin/env python3
"""Run the ringback API server."""

import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description='Ringback API server')
    parser.add_argument('--host', default='0.0.0.0')
    parser.add_argument('--port', type=int, default=8000)
    parser.add_argument(
        '--storage',
        choices=['file', 'postgres'],
        help='Storage backend (default: $RINGBACK_STORAGE or postgres)'
    )
    parser.add_argument(
        '--transcriber',
        choices=['text', 'whisper'],
        help='Speech-to-text engine (default: from config, else text)'
    )
    parser.add_argument('--no-reload', action='store_true', help='Disable auto-reload')
    args = parser.parse_args()

    # The app reads these on startup, including in the reloader's worker process
    if args.storage:
        os.environ['RINGBACK_STORAGE'] = args.storage
    if args.transcriber:
        os.environ['RINGBACK_TRANSCRIBER'] = args.transcriber

    print(f"Starting Ringback API server on port {args.port}...")
    print(f"API documentation available at: http://localhost:{args.port}/docs")
    uvicorn.run(
        "server.app:app",
        host=args.host,
        port=args.port,
        reload=not args.no_reload
    )


if __name__ == "__main__":
    main()
