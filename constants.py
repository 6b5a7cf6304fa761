import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Comma separated, "*" allows every origin
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o.strip()]

ICE_SERVERS = [s.strip() for s in os.getenv("ICE_SERVERS", "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302").split(",") if s.strip()]

# Local capture devices handed to aiortc's MediaPlayer
MEDIA_VIDEO_DEVICE = os.getenv("MEDIA_VIDEO_DEVICE", "/dev/video0")
MEDIA_AUDIO_DEVICE = os.getenv("MEDIA_AUDIO_DEVICE", "default")
MEDIA_VIDEO_FORMAT = os.getenv("MEDIA_VIDEO_FORMAT", "v4l2")
MEDIA_AUDIO_FORMAT = os.getenv("MEDIA_AUDIO_FORMAT", "pulse")
MEDIA_VIDEO_SIZE = os.getenv("MEDIA_VIDEO_SIZE", "640x480")

# Seconds before a stalled Offering/Answering link is closed; empty means wait forever
_negotiation_timeout = os.getenv("NEGOTIATION_TIMEOUT", "")
NEGOTIATION_TIMEOUT = float(_negotiation_timeout) if _negotiation_timeout else None

SIGNAL_URL = os.getenv("SIGNAL_URL", f"ws://localhost:{PORT}/ws")
