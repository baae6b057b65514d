from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import time
import urllib.error
import urllib.request


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def conversation_event(batch_id: str, index: int, duration_secs: int, status: str) -> dict:
    return {
        "type": "post_call_transcription",
        "data": {
            "conversation_id": f"conv_mock_{batch_id}_{index}",
            "agent_id": "agent_mock",
            "status": status,
            "batch_call": {
                "batch_call_id": batch_id,
                "batch_call_recipient_id": f"rcpt_mock_{index}",
            },
            "phone_call": {"external_number": f"+1555{index:07d}"},
            "metadata": {"call_duration_secs": duration_secs, "cost": duration_secs * 10},
            "analysis": {
                "call_successful": "success" if status == "done" else "failure",
                "transcript_summary": "mock call generated locally",
            },
            "transcript": [{"role": "agent", "message": "Hello from the mock agent."}],
        },
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send signed mock provider webhooks to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--batch-id", required=True)
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--duration", type=int, default=50)
    parser.add_argument("--failed", type=int, default=0, help="How many of the calls fail.")
    parser.add_argument("--final-status", default="completed")
    parser.add_argument("--secret", required=True)
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/provider"
    events = [
        conversation_event(
            args.batch_id,
            index,
            0 if index <= args.failed else args.duration,
            "failed" if index <= args.failed else "done",
        )
        for index in range(1, args.count + 1)
    ]
    events.append(
        {
            "type": "batch_status_update",
            "data": {
                "batch_id": args.batch_id,
                "status": args.final_status,
                "total_calls_dispatched": args.count,
                "last_updated_at_unix": int(time.time()),
            },
        }
    )
    for event in events:
        body = json.dumps(event, separators=(",", ":")).encode("utf-8")
        headers = {"elevenlabs-signature": sign_payload(args.secret, body)}
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {event['type']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
