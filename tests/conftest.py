import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DESK_API_URL", "http://support.test/api/agent")
os.environ.setdefault("DESK_CHANNEL_URL", "ws://support.test/ws/tickets")
os.environ.setdefault("DISPLAY_TIMEZONE", "UTC")
