import logging
from typing import Optional

from supabase import create_client, Client

from src.shared.config import SUPABASE_URL, SUPABASE_KEY

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1


def get_db() -> Client:
    """Create and return a Supabase client."""
    return create_client(SUPABASE_URL, SUPABASE_KEY)


class Database:
    """Wrapper around Supabase client with helper methods for common queries."""

    def __init__(self):
        self.client = get_db()

    # --- Accounts ---

    def get_accounts(self) -> list:
        try:
            resp = (
                self.client.table("accounts")
                .select("*")
                .order("created_at")
                .execute()
            )
            return resp.data
        except Exception as e:
            logger.error(f"Failed to get accounts: {e}")
            return []

    def insert_account(self, account: dict) -> Optional[dict]:
        try:
            resp = self.client.table("accounts").insert(account).execute()
            return resp.data[0] if resp.data else None
        except Exception as e:
            logger.error(f"Failed to insert account: {e}")
            return None

    def update_account(self, account_id: str, updates: dict) -> Optional[dict]:
        try:
            resp = (
                self.client.table("accounts")
                .update(updates)
                .eq("id", account_id)
                .execute()
            )
            return resp.data[0] if resp.data else None
        except Exception as e:
            logger.error(f"Failed to update account {account_id}: {e}")
            return None

    def delete_account(self, account_id: str) -> bool:
        try:
            self.client.table("accounts").delete().eq("id", account_id).execute()
            return True
        except Exception as e:
            logger.error(f"Failed to delete account {account_id}: {e}")
            return False

    def set_master_account(self, account_id: str) -> bool:
        """Flag one account as master and clear the flag everywhere else."""
        try:
            self.client.table("accounts").update(
                {"is_master": False}
            ).neq("id", account_id).execute()
            self.client.table("accounts").update(
                {"is_master": True}
            ).eq("id", account_id).execute()
            return True
        except Exception as e:
            logger.error(f"Failed to set master account {account_id}: {e}")
            return False

    # --- Settings ---

    def get_settings(self) -> Optional[dict]:
        try:
            resp = (
                self.client.table("settings")
                .select("*")
                .eq("id", SETTINGS_ROW_ID)
                .limit(1)
                .execute()
            )
            return resp.data[0] if resp.data else None
        except Exception as e:
            logger.error(f"Failed to get settings: {e}")
            return None

    def upsert_settings(self, settings: dict) -> Optional[dict]:
        try:
            row = {**settings, "id": SETTINGS_ROW_ID}
            resp = self.client.table("settings").upsert(row).execute()
            return resp.data[0] if resp.data else None
        except Exception as e:
            logger.error(f"Failed to upsert settings: {e}")
            return None

    # --- Contract Limits ---

    def get_contract_limits(self) -> dict:
        try:
            resp = self.client.table("contract_limits").select("*").execute()
            return {row["symbol"]: int(row["max_contracts"]) for row in resp.data}
        except Exception as e:
            logger.error(f"Failed to get contract limits: {e}")
            return {}

    def upsert_contract_limit(self, symbol: str, max_contracts: int) -> Optional[dict]:
        try:
            resp = (
                self.client.table("contract_limits")
                .upsert(
                    {"symbol": symbol, "max_contracts": max_contracts},
                    on_conflict="symbol",
                )
                .execute()
            )
            return resp.data[0] if resp.data else None
        except Exception as e:
            logger.error(f"Failed to upsert contract limit for {symbol}: {e}")
            return None

    # --- Health Checks ---

    def log_health_check(self, check: dict) -> Optional[dict]:
        try:
            resp = self.client.table("health_checks").insert(check).execute()
            return resp.data[0] if resp.data else None
        except Exception as e:
            logger.error(f"Failed to log health check: {e}")
            return None
