import os
import sys

import qrcode

# Add repository root to path so we can import utils
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from utils.whatsapp import DeliveryError, init_messaging_client  # noqa: E402


def show_pairing_qr() -> int:
    """
    Print the WhatsApp pairing QR in the terminal.

    Scan it from WhatsApp > Linked devices, or open GET /api/otp/qr in a
    browser when the server runs on a remote host.
    """
    client = init_messaging_client()
    if client is None:
        print("WHATSAPP_BRIDGE_URL is not set")
        return 1

    try:
        raw = client.get_raw_qr()
    except DeliveryError as exc:
        print(f"Could not reach the WhatsApp bridge at {client.base_url}: {exc.detail}")
        return 1

    if raw is None:
        print("WhatsApp is already connected (or no QR is pending).")
        return 0

    qr = qrcode.QRCode(border=2)
    qr.add_data(raw)
    qr.make(fit=True)
    print("\nScan with WhatsApp (Linked devices):\n")
    qr.print_ascii(invert=True)
    return 0


if __name__ == "__main__":
    sys.exit(show_pairing_qr())
