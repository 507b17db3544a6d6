# src/models/__init__.py
from src.models.users import User
from src.models.medicine import Medicine
from src.models.dose_log import DoseLog
from src.models.notification import Notification
from src.models.fcm_token import FcmToken
