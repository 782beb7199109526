import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///poisoner.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Roster limits
    MAX_PLAYERS = int(os.environ.get('MAX_PLAYERS', '20'))
    MIN_PLAYERS = int(os.environ.get('MIN_PLAYERS', '4'))
    # Local session history (per device)
    MAX_RECENT_SESSIONS = int(os.environ.get('MAX_RECENT_SESSIONS', '5'))
    SESSION_MAX_AGE_SEC = int(os.environ.get('SESSION_MAX_AGE_SEC', str(24 * 60 * 60)))
    SESSION_STORE_PATH = os.environ.get('SESSION_STORE_PATH') or os.path.expanduser('~/.poisoner_sessions.json')
    # Operator host handover identity
    HOST_HANDOVER_NAME = os.environ.get('HOST_HANDOVER_NAME') or 'RUSSELL TINSLEBOTTOM'
    # Debug acknowledgment simulation delays (seconds)
    SIMULATE_ACK_MIN_SEC = float(os.environ.get('SIMULATE_ACK_MIN_SEC', '1'))
    SIMULATE_ACK_MAX_SEC = float(os.environ.get('SIMULATE_ACK_MAX_SEC', '5'))
    # Where clients reach the record store and change feed
    SERVER_URL = os.environ.get('SERVER_URL') or 'http://localhost:5000'
    ALLOWED_ORIGINS = [
        o.strip() for o in (os.environ.get('ALLOWED_ORIGINS') or
                            'http://localhost:5173,http://127.0.0.1:5173').split(',') if o.strip()
    ]
