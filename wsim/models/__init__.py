"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table when create_all runs at startup
  2. Other modules can import from wsim.models directly
"""

from wsim.models.user import WalletUser  # noqa: F401
from wsim.models.enrollment import BsimEnrollment  # noqa: F401
from wsim.models.card import WalletCard  # noqa: F401
from wsim.models.device import MobileDevice, MobileRefreshToken  # noqa: F401
from wsim.models.merchant import Merchant  # noqa: F401
from wsim.models.payment_request import MobilePaymentRequest, PaymentStatus  # noqa: F401
from wsim.models.agent import Agent, AgentTransaction, StepUpRequest  # noqa: F401
