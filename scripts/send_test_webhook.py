import hashlib
import hmac
import json
import os
import time

import click
import requests
from dotenv import load_dotenv

# Load .env variables
load_dotenv()

HOTMART_SECRET = os.getenv("HOTMART_SECRET", "")
DOPPUS_SECRET_KEY = os.getenv("DOPPUS_SECRET_KEY", "")


def hotmart_payload(email: str, event: str, transaction: str) -> dict:
    return {
        "id": f"test-{int(time.time())}",
        "event": event,
        "version": "2.0.0",
        "hottok": HOTMART_SECRET,
        "data": {
            "buyer": {"email": email, "name": "Cliente Teste", "checkout_phone": "+5511999887766"},
            "product": {"id": 5974664, "name": "DesignAuto Premium"},
            "purchase": {"transaction": transaction, "status": "APPROVED", "offer": {"code": "aukjngrt"}},
            "subscription": {"plan": {"name": "Plano Anual"}, "subscriber": {"code": "SUB-TESTE"}},
        },
    }


def doppus_payload(email: str, transaction: str) -> dict:
    # May/2025 format: no event field, customer + items at the top level
    return {
        "id": transaction,
        "customer": {"email": email, "name": "Cliente Teste", "phone": "+5511888776655"},
        "items": [{"code": "PREMIUM_ANUAL", "name": "DesignAuto Premium Anual"}],
        "transaction": {"code": transaction},
        "status": {"code": "approved"},
    }


@click.command()
@click.option("--url", default="http://127.0.0.1:5000", show_default=True, help="Base URL of the running service.")
@click.option("--source", type=click.Choice(["hotmart", "doppus"]), default="hotmart", show_default=True)
@click.option("--email", default="teste.webhook@designauto.com.br", show_default=True)
@click.option("--event", default="PURCHASE_APPROVED", show_default=True)
@click.option("--transaction", default=None, help="Transaction id, generated when omitted.")
def main(url, source, email, event, transaction):
    """Send a sample provider webhook to a running instance."""
    transaction = transaction or f"HP{int(time.time())}"
    headers = {"Content-Type": "application/json"}
    if source == "hotmart":
        payload = hotmart_payload(email, event, transaction)
    else:
        payload = doppus_payload(email, transaction)

    # Convert payload to JSON bytes
    data = json.dumps(payload).encode("utf-8")

    if source == "doppus" and DOPPUS_SECRET_KEY:
        headers["X-Doppus-Signature"] = hmac.new(DOPPUS_SECRET_KEY.encode(), data, hashlib.sha256).hexdigest()

    resp = requests.post(f"{url.rstrip('/')}/webhook/{source}", headers=headers, data=data, timeout=20)

    click.echo(f"Status: {resp.status_code}")
    click.echo(f"Response: {resp.json()}")


if __name__ == "__main__":
    main()
