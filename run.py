"""Local development entry point.

Usage:
    python run.py

Set WEBHOOK_SCHEDULER_ENABLED=1 in .env to run the retry sweep in the
background of the dev server; otherwise run ``flask process-webhooks``
by hand (or ``flask run-scheduler`` in a second terminal).
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from codledger import create_app  # noqa: E402

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=int(os.environ.get("PORT", 5001)))
