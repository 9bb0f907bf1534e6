"""Example: link the client, send a few template messages and disconnect.

Usage:
    python main.py 94771234567
    python main.py 94771234567 --pairing-code --phone-number 94770000000
"""

import argparse
import sys
import time
from typing import List, Optional

import qrcode

from config import ClientConfig, configure_logging
from errors import WhatsAppClientError
from events import CONNECTION_STATE, PAIRING_CODE, QR
from whatsapp import WhatsappClient

DEMO_MESSAGES = [
    ("welcome", {"name": "John Doe", "company": "S JAY Web Solutions"}),
    ("verificationCode", {"code": "812399"}),
    ("shippingUpdate", {"orderId": "OXU-10293", "carrier": "FedEx", "trackingNumber": "9876543210"}),
]


def print_qr(data: str) -> None:
    """Render a QR payload in the terminal."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    print("Scan this QR code with your WhatsApp app:", flush=True)
    qr.print_ascii(invert=True)
    sys.stdout.flush()


def print_pairing_code(payload: dict) -> None:
    print(f"Enter this pairing code in WhatsApp > Linked Devices: {payload['code']}", flush=True)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send demo WhatsApp template messages.")
    parser.add_argument("recipient", help="Recipient phone number or JID")
    parser.add_argument("--auth-path", help="Credential directory (default: WHATSAPP_AUTH_PATH or auth_info_baileys)")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--pairing-code", action="store_true", help="Link with a pairing code instead of a QR code")
    parser.add_argument("--phone-number", help="Phone number to link when using --pairing-code")
    parser.add_argument("--delay", type=float, default=5.0, help="Seconds between messages (default: 5)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    overrides = {}
    if args.auth_path:
        overrides["auth_path"] = args.auth_path
    if args.pairing_code:
        overrides["use_pairing_code"] = True
    if args.phone_number:
        overrides["phone_number"] = args.phone_number
    config = ClientConfig.from_environment(config_path=args.config, **overrides)
    configure_logging(config.log_level)

    client = WhatsappClient(config)
    client.on(QR, print_qr)
    client.on(PAIRING_CODE, print_pairing_code)
    client.on(CONNECTION_STATE, lambda state: print(f"Connection: {state}", flush=True))

    print("Initializing WhatsApp client...", flush=True)
    try:
        client.initialize()
        print("Client is connected!", flush=True)

        for index, (template_name, data) in enumerate(DEMO_MESSAGES):
            if index:
                time.sleep(args.delay)
            print(f"Sending '{template_name}' message to {args.recipient}...", flush=True)
            client.send_template_message(args.recipient, template_name, data)
            print(f"'{template_name}' sent!", flush=True)

        print("All messages sent. Disconnecting...", flush=True)
        return 0
    except WhatsAppClientError as e:
        print(f"An error occurred: {e}", file=sys.stderr, flush=True)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", flush=True)
        return 130
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
