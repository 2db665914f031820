import os
import tempfile

# app.py creates its SQLite file at import; keep it out of the checkout.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="calendar-tests-"))
os.environ.setdefault("REDIS_URL", "memory://")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
