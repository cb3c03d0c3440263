from .db import db
from .user import User, Role, user_roles
from .session import Session
from .login_attempt import LoginAttemptState
from .device import DeviceRecord
from .pending_device import PendingDeviceConfirmation
from .security_event import SecurityEvent
from .notification_preference import NotificationPreference
from .complaint import Complaint, ComplaintComment
