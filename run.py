"""Local development entry point for the Stripe integration service.

Usage:
    python run.py

Relaunches itself with ./venv/bin/python when started from another
interpreter, then serves webhooks and the intent endpoint on port 5001.
"""

import os
import sys
import subprocess

# ── Prefer the project virtualenv ──
_here = os.path.dirname(os.path.abspath(__file__))
_venv_python = os.path.join(_here, "venv", "bin", "python")

if os.path.exists(_venv_python) and os.path.realpath(sys.executable) != os.path.realpath(_venv_python):
    print("[run.py] Relaunching with venv Python...")
    try:
        sys.exit(subprocess.call([_venv_python] + sys.argv))
    except KeyboardInterrupt:
        sys.exit(0)

# ── Startup ──
from dotenv import load_dotenv

load_dotenv()  # STRIPE_* and DATABASE_URL come from .env locally

from crm_stripe import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
