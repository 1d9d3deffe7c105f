"""WSGI configuration for production deployment.

Session state lives in process memory, so run a single worker process
(threads are fine), e.g. ``gunicorn -w 1 --threads 16 wsgi:app``.
"""
import os
from dotenv import load_dotenv
from rollsync import create_app

load_dotenv()

app = create_app(os.getenv('FLASK_ENV', 'production'))
