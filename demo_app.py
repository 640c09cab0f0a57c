"""Demo consent lifecycle service.

Runs the HTTP API with configuration read from CONSENT_* environment
variables.
Run with: CONSENT_WEBHOOK_SECRET=s3cr3t python demo_app.py
Then try:
    curl -X POST http://localhost:3002/api/consents \\
        -H 'Content-Type: application/json' \\
        -d '{"subjectId": "client-42", "notifyTarget": "http://localhost:9000/hook"}'
"""

import uvicorn

from consent_lifecycle.adapters.http import create_app
from consent_lifecycle.config import ConsentConfig
from consent_lifecycle.observability.logging import configure_logging

config = ConsentConfig.from_env()
configure_logging(level=config.log_level, json_output=config.json_logs)

app = create_app(config)


if __name__ == "__main__":
    print("=" * 60)
    print("Consent Lifecycle Demo Server")
    print("=" * 60)
    print(f"\nStarting server at {config.public_base_url}")
    print(f"Storage adapter: {config.storage_adapter}")
    print("\nPress Ctrl+C to stop")
    print("=" * 60)
    print()

    uvicorn.run(app, host="0.0.0.0", port=3002, log_level=config.log_level.lower())
