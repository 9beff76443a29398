import os
import sys
from pathlib import Path

# Default env for app settings in tests.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-token")
os.environ.setdefault("EMAIL_FROM", "notifications@example.com")
os.environ.setdefault("SMTP_HOST", "smtp.example.com")
os.environ.setdefault("PUSH_GATEWAY_URL", "https://push.example.com/v1/send")

# Ensure the repo root is on sys.path so "import herald" works without an install.
REPO_ROOT = Path(__file__).resolve().parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
