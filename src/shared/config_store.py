import logging
import math
import uuid
from dataclasses import fields, replace
from typing import Optional

from src.shared.config import ACCOUNT_DEFAULTS, DEFAULT_CONTRACT_LIMITS
from src.shared.database import Database
from src.shared.models import Account, GlobalSettings

logger = logging.getLogger(__name__)


class ConfigStore:
    """Account roster, global settings and contract limits.

    Everything is loaded once at construction and served from memory;
    mutations write through to the database. The roster always has at
    most one master, and has exactly one while it is non-empty.
    """

    def __init__(self):
        self.db = Database()
        self.accounts: list[Account] = [Account.from_row(r) for r in self.db.get_accounts()]
        self.settings = GlobalSettings.from_row(self.db.get_settings())
        self.contract_limits = {**DEFAULT_CONTRACT_LIMITS, **self.db.get_contract_limits()}
        self._ensure_single_master()
        logger.info(
            f"Config loaded: {len(self.accounts)} accounts, "
            f"{len(self.contract_limits)} contract limits"
        )

    def _ensure_single_master(self) -> None:
        masters = [a for a in self.accounts if a.is_master]
        if len(masters) == 1 or not self.accounts:
            return
        keep = masters[0] if masters else self.accounts[0]
        logger.warning(f"Roster had {len(masters)} masters, keeping {keep.name}")
        self.set_master_account(keep.id)

    # --- Accounts ---

    def get_accounts(self) -> list:
        return list(self.accounts)

    def get_enabled_accounts(self) -> list:
        return [a for a in self.accounts if a.enabled]

    def get_master_account(self) -> Optional[Account]:
        return next((a for a in self.accounts if a.is_master and a.enabled), None)

    def get_slave_accounts(self) -> list:
        return [a for a in self.accounts if not a.is_master and a.enabled]

    def get_account(self, account_id: str) -> Optional[Account]:
        return next((a for a in self.accounts if a.id == account_id), None)

    def find_account(self, ref: str) -> Optional[Account]:
        """Look up an account by id, 1-based roster position, or name (case-insensitive)."""
        ref = (ref or "").strip()
        if not ref:
            return None
        account = self.get_account(ref)
        if account:
            return account
        if ref.isdigit() and 1 <= int(ref) <= len(self.accounts):
            return self.accounts[int(ref) - 1]
        return next((a for a in self.accounts if a.name.lower() == ref.lower()), None)

    def add_account(self, name: str, auth_token: str, proxy_url: str = None,
                    **overrides) -> Account:
        """Add an account. The first account in the roster always becomes master."""
        params = {**ACCOUNT_DEFAULTS, **overrides}
        params["is_master"] = bool(params.get("is_master")) or not self.accounts
        account = Account(
            id=str(uuid.uuid4()),
            name=name,
            auth_token=auth_token,
            proxy_url=proxy_url or None,
            **params,
        )
        if account.leverage_min > account.leverage_max:
            raise ValueError(
                f"leverage_min ({account.leverage_min}) > leverage_max ({account.leverage_max})"
            )

        if self.db.insert_account(account.to_row()) is None:
            logger.warning(f"Account {name} was not persisted")
        self.accounts.append(account)
        if account.is_master:
            self.set_master_account(account.id)

        logger.info(f"Added account {name} (master={account.is_master})")
        return account

    def update_account(self, account_id: str, **updates) -> Optional[Account]:
        account = self.get_account(account_id)
        if account is None:
            return None

        known = {f.name for f in fields(Account)} - {"id"}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")

        updated = replace(account, **updates)
        if updated.leverage_min > updated.leverage_max:
            raise ValueError(
                f"leverage_min ({updated.leverage_min}) > leverage_max ({updated.leverage_max})"
            )

        # Mastership moves only through set_master_account
        make_master = updates.pop("is_master", None)
        updated.is_master = account.is_master
        self.accounts[self.accounts.index(account)] = updated
        if updates:
            self.db.update_account(account_id, updates)

        if make_master:
            self.set_master_account(account_id)
        return self.get_account(account_id)

    def delete_account(self, account_id: str) -> bool:
        """Delete an account; if it was master, the first remaining account takes over."""
        account = self.get_account(account_id)
        if account is None:
            return False

        self.db.delete_account(account_id)
        self.accounts.remove(account)
        logger.info(f"Deleted account {account.name}")

        if account.is_master and self.accounts:
            self.set_master_account(self.accounts[0].id)
        return True

    def set_master_account(self, account_id: str) -> bool:
        if self.get_account(account_id) is None:
            return False

        for acc in self.accounts:
            acc.is_master = acc.id == account_id
        self.db.set_master_account(account_id)
        logger.info(f"Master account is now {self.get_account(account_id).name}")
        return True

    def toggle_account(self, account_id: str, enabled: bool) -> bool:
        account = self.get_account(account_id)
        if account is None:
            return False
        account.enabled = enabled
        self.db.update_account(account_id, {"enabled": enabled})
        return True

    # --- Settings ---

    def get_settings(self) -> GlobalSettings:
        return self.settings

    def update_settings(self, **updates) -> GlobalSettings:
        """Apply and persist a partial settings update. Invalid updates raise ValueError."""
        known = {f.name for f in fields(GlobalSettings)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")

        candidate = replace(self.settings, **updates)
        candidate.validate()

        self.settings = candidate
        if self.db.upsert_settings(candidate.to_row()) is None:
            logger.warning("Settings update was not persisted")
        logger.info(f"Settings updated: {updates}")
        return self.settings

    # --- Contract Limits ---

    def get_contract_limit(self, symbol: str) -> Optional[int]:
        return self.contract_limits.get(symbol)

    def get_contract_limits(self) -> dict:
        return dict(self.contract_limits)

    def set_contract_limit(self, symbol: str, max_contracts: int) -> None:
        if max_contracts < 0:
            raise ValueError("Contract limit must be non-negative")
        self.contract_limits[symbol] = max_contracts
        self.db.upsert_contract_limit(symbol, max_contracts)

    # --- Legacy import ---

    def import_from_env_format(self, raw: str) -> int:
        """Import accounts from the legacy MEXC_TOKENS format.

        Comma-separated records of colon-separated fields. Records with
        fewer than 7 fields are ignored. Field 0 is the auth token; when
        there are more than 7 fields, field 5 is the max position in USD
        and fields 8+ form the proxy URL.
        """
        imported = 0
        for part in [p.strip() for p in raw.split(",") if p.strip()]:
            parts = [f.strip() for f in part.split(":")]
            if len(parts) < 7:
                continue

            auth_token = parts[0]
            max_cap = None
            proxy_url = None
            if len(parts) > 7:
                max_cap = parts[5]
                proxy_url = ":".join(parts[8:]).strip() or None

            try:
                max_position_usd = float(max_cap) if max_cap else 100.0
            except ValueError:
                max_position_usd = 100.0
            if math.isnan(max_position_usd):
                max_position_usd = 100.0

            self.add_account(
                name=f"Account {len(self.accounts) + 1}",
                auth_token=auth_token,
                proxy_url=proxy_url,
                max_position_usd=max_position_usd,
            )
            imported += 1

        return imported
