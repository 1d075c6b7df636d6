"""SQLAlchemy models package."""

from .bank_transfer import BankTransfer, BankTransferStatusEnum  # noqa: F401
from .broker_event import BrokerEventReceipt  # noqa: F401
from .counterparty import Broker, Merchant  # noqa: F401
from .notification import (  # noqa: F401
    Notification,
    NotificationStatusEnum,
    NotificationTargetTypeEnum,
)
from .order import Order, OrderStatusEnum, OrderTypeEnum  # noqa: F401
from .order_state_event import OrderStateActorTypeEnum, OrderStateEvent  # noqa: F401
from .prepare_batch import PrepareBatch, PrepareBatchStatusEnum, PreparedOrder  # noqa: F401
from .sweep_run import SweepRun, SweepRunStatusEnum  # noqa: F401
from .wallet import MemberStockPick, Wallet, WalletStatusEnum  # noqa: F401
