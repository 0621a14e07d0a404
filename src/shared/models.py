from dataclasses import dataclass, field, asdict, fields
from typing import Optional

from src.shared.config import DEFAULT_SETTINGS

LONG = "long"
SHORT = "short"


def opposite_side(side: str) -> str:
    return SHORT if side == LONG else LONG


@dataclass
class Account:
    """One exchange account in the roster."""

    id: str
    name: str
    auth_token: str
    proxy_url: Optional[str] = None
    enabled: bool = True
    is_master: bool = False
    max_position_usd: float = 100.0
    leverage_min: int = 10
    leverage_max: int = 20

    @classmethod
    def from_row(cls, row: dict) -> "Account":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            auth_token=row.get("auth_token") or "",
            proxy_url=row.get("proxy_url") or None,
            enabled=bool(row.get("enabled", True)),
            is_master=bool(row.get("is_master", False)),
            max_position_usd=float(row.get("max_position_usd") or 0),
            leverage_min=int(row.get("leverage_min") or 1),
            leverage_max=int(row.get("leverage_max") or 1),
        )

    def to_row(self) -> dict:
        return asdict(self)


@dataclass
class GlobalSettings:
    delay_min_ms: int = DEFAULT_SETTINGS["delay_min_ms"]
    delay_max_ms: int = DEFAULT_SETTINGS["delay_max_ms"]
    price_deviation_pct: float = DEFAULT_SETTINGS["price_deviation_pct"]
    leverage_spread: int = DEFAULT_SETTINGS["leverage_spread"]
    copy_open_positions: bool = DEFAULT_SETTINGS["copy_open_positions"]
    copy_close_positions: bool = DEFAULT_SETTINGS["copy_close_positions"]
    copy_tp_sl: bool = DEFAULT_SETTINGS["copy_tp_sl"]
    signals_enabled: bool = DEFAULT_SETTINGS["signals_enabled"]
    signal_entry_offset_pct: float = DEFAULT_SETTINGS["signal_entry_offset_pct"]
    signal_tp_offset_pct: float = DEFAULT_SETTINGS["signal_tp_offset_pct"]
    signal_cancel_time_min: float = DEFAULT_SETTINGS["signal_cancel_time_min"]
    signal_cancel_time_max: float = DEFAULT_SETTINGS["signal_cancel_time_max"]

    @classmethod
    def from_row(cls, row: Optional[dict]) -> "GlobalSettings":
        """Build settings from a stored row, falling back to defaults for missing keys."""
        known = {f.name for f in fields(cls)}
        merged = dict(DEFAULT_SETTINGS)
        for key, value in (row or {}).items():
            if key in known and value is not None:
                merged[key] = value
        return cls(**merged)

    def to_row(self) -> dict:
        return asdict(self)

    def validate(self) -> None:
        if self.delay_min_ms < 0 or self.delay_max_ms < 0:
            raise ValueError("Delays must be non-negative")
        if self.delay_min_ms > self.delay_max_ms:
            raise ValueError(
                f"delay_min_ms ({self.delay_min_ms}) > delay_max_ms ({self.delay_max_ms})"
            )
        if self.price_deviation_pct < 0:
            raise ValueError("price_deviation_pct must be non-negative")
        if self.leverage_spread < 0:
            raise ValueError("leverage_spread must be non-negative")
        if self.signal_cancel_time_min < 0:
            raise ValueError("Cancel timer bounds must be non-negative")
        if self.signal_cancel_time_min > self.signal_cancel_time_max:
            raise ValueError(
                f"signal_cancel_time_min ({self.signal_cancel_time_min}) > "
                f"signal_cancel_time_max ({self.signal_cancel_time_max})"
            )


@dataclass
class PositionSnapshot:
    symbol: str
    side: str  # "long" | "short"
    volume: float
    entry_price: float
    leverage: int
    margin: float = 0.0
    unrealized_pnl: float = 0.0
    liquidation_price: Optional[float] = None
    position_id: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.symbol, self.side)


@dataclass
class Order:
    order_id: str
    symbol: str
    side: int  # 1=OpenLong, 2=CloseShort, 3=OpenShort, 4=CloseLong
    type: int  # 1=Limit, 5=Market
    price: float
    volume: float
    filled_volume: float = 0.0
    status: str = ""
    leverage: int = 1
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    create_time: int = 0


@dataclass
class ContractInfo:
    symbol: str
    contract_size: float = 1.0
    price_step: float = 0.00001
    volume_step: float = 1.0
    min_volume: float = 1.0
    max_volume: float = 0.0


@dataclass
class AccountBalance:
    available: float
    frozen: float
    total: float
    currency: str = "USDT"


@dataclass
class TradeIntent:
    """Reference trade replicated onto accounts.

    notional_usd=None sizes each account at its own max position;
    leverage=None draws each account's leverage from its own range.
    """

    symbol: str
    side: str
    price: float
    notional_usd: Optional[float] = None
    leverage: Optional[int] = None
    price_step: Optional[float] = None
    take_profit: Optional[float] = None


@dataclass
class ExecutionParams:
    price: float
    leverage: int
    volume: int
    take_profit: Optional[float] = None
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


@dataclass
class TradeResult:
    account_id: str
    account_name: str
    success: bool
    message: str
    order_id: Optional[str] = None
    executed_price: Optional[float] = None
    executed_volume: Optional[float] = None
    leverage: Optional[int] = None
    latency_ms: Optional[int] = None
    skipped: bool = False

    @classmethod
    def failure(cls, account: Account, message: str, skipped: bool = False) -> "TradeResult":
        return cls(
            account_id=account.id,
            account_name=account.name,
            success=False,
            message=message,
            skipped=skipped,
        )


@dataclass
class BatchReport:
    results: list = field(default_factory=list)
    total_latency_ms: int = 0
    title: str = ""

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count


@dataclass
class ParsedSignal:
    symbol: str
    full_symbol: str
    entry_price: float
    take_profit: float
    side: str


@dataclass
class ParsedAlignSignal:
    symbol: str
    full_symbol: str
    price: float


@dataclass
class PositionEvent:
    kind: str  # "opened" | "closed"
    account_id: str
    position: PositionSnapshot
