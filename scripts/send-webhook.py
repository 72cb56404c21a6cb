#!/usr/bin/env python3
"""
Send a signed card gateway webhook to a running marketplace service.

Usage:
    PAYSTACK_SECRET_KEY=sk_test_xxx python scripts/send-webhook.py <reference> [event]

The reference is the one returned by POST /payments/card/initiate.
"""

import hashlib
import hmac
import json
import os
import sys
from datetime import datetime

import requests

API_URL = os.getenv("API_URL", "http://localhost:8000")
SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")


def log(message):
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] {message}")


def build_payload(reference, event):
    return {
        "event": event,
        "data": {
            "reference": reference,
            "status": "success",
            "channel": "card",
            "currency": "NGN",
            "paid_at": datetime.utcnow().isoformat() + "Z",
        },
    }


def send(reference, event="charge.success"):
    # Sign exactly the bytes that are sent
    body = json.dumps(build_payload(reference, event)).encode("utf-8")
    signature = hmac.new(SECRET_KEY.encode("utf-8"), body, hashlib.sha512).hexdigest()

    response = requests.post(
        f"{API_URL}/payments/card/webhook",
        data=body,
        headers={"Content-Type": "application/json", "x-paystack-signature": signature},
        timeout=10,
    )
    log(f"{event} for {reference}: {response.status_code} {response.text}")
    return response.status_code


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    if not SECRET_KEY:
        log("PAYSTACK_SECRET_KEY is not set")
        sys.exit(1)

    event = sys.argv[2] if len(sys.argv) > 2 else "charge.success"
    status_code = send(sys.argv[1], event)
    sys.exit(0 if status_code == 200 else 1)
