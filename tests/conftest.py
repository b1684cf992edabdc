import os
import sys

# Ensure project root is on sys.path so `import webhook_delay` works when running tests
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Keep tests away from a developer's .env and the default on-disk database.
os.environ.setdefault("WEBHOOK_DELAY_DB_PATH", os.path.join(PROJECT_ROOT, ".pytest-scheduler.db"))
