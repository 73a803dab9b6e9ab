"""Entry point for ringback CLI client."""

import argparse
import sys

from cli.api_client import RingbackAPIClient
from cli.console import ConsoleUI


def main():
    parser = argparse.ArgumentParser(description='Ringback - practice a language by phone')
    parser.add_argument(
        '--server',
        default='http://localhost:8000',
        help='Server URL (default: http://localhost:8000)'
    )
    parser.add_argument(
        '--language',
        default='es',
        help='Language for practice outside of calls (default: es)'
    )
    parser.add_argument('--call', metavar='CONTACT_ID', help='Call this contact right away')
    parser.add_argument('--poll', type=float, default=0.5, help='Status poll interval in seconds')
    args = parser.parse_args()

    client = RingbackAPIClient(base_url=args.server)
    ui = ConsoleUI(client, language=args.language, poll_seconds=args.poll)

    try:
        ui.run(call=args.call)
    except KeyboardInterrupt:
        if ui.in_call:
            client.end_call()
        print('\nGoodbye!')
        sys.exit(0)


if __name__ == '__main__':
    main()
