#!/usr/bin/env python
"""
FastAPI server for Mutuus Billing
Serves the billing API and runs the monthly commission scheduler
"""
import os
import sys

# Add src to Python path (relative to api_server.py)
src_path = os.path.join(os.path.dirname(__file__), "src")
if os.path.exists(src_path) and src_path not in sys.path:
    sys.path.insert(0, src_path)

from mutuus_billing.app import create_app, main  # noqa: E402
from mutuus_billing.config import config  # noqa: E402
from mutuus_billing.logging_config import setup_logging  # noqa: E402

setup_logging(config.ENV, config.LOG_LEVEL)
app = create_app(config)


if __name__ == "__main__":
    main(app)
