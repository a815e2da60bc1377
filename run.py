"""Local development entry point.

Usage:
    python run.py

Webhook providers need a public URL; tunnel port 5001 (e.g. ngrok) and
point the Mercado Pago / Stripe dashboards at:
    https://<tunnel>/webhooks/mercadopago
    https://<tunnel>/stripe/webhooks
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from app import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("PORT", 5001)))
