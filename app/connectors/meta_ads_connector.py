"""
Meta Ads connector
Fetches campaigns, daily campaign insights and age/gender breakdowns from
the Meta Marketing (Graph) API. Every page request goes through the shared
per-account rate limiter.
"""
from typing import Any, Dict, List, Optional, Sequence
from datetime import date, datetime
import json

import aiohttp

from app.connectors.base_connector import BaseConnector
from app.config import get_settings
from app.exceptions import MetaApiError
from app.services.rate_limiter import with_meta_rate_limit
from app.utils.logger import log
from app.utils.helpers import to_float, to_int

settings = get_settings()

CAMPAIGN_FIELDS = "id,name,status,objective,daily_budget,lifetime_budget,created_time"
INSIGHT_FIELDS = "campaign_id,campaign_name,spend,impressions,clicks,reach,ctr,cpc,cpm,actions,action_values,date_start"
DEMOGRAPHIC_FIELDS = "spend,impressions,clicks,reach,date_start"

PURCHASE_ACTION_TYPES = ("purchase", "offsite_conversion.fb_pixel_purchase", "omni_purchase")

ENTITIES = ("campaigns", "insights", "demographics")


def normalize_account_id(account_id: str) -> str:
    """Graph API ad account node id (act_<id>)"""
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def _day(value) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def _purchase_total(entries: Optional[List[Dict]]) -> float:
    """Meta reports purchases under several action types; take the largest"""
    values = [to_float(e.get("value")) for e in entries or [] if e.get("action_type") in PURCHASE_ACTION_TYPES]
    return max(values) if values else 0.0


class MetaAdsConnector(BaseConnector):
    """Connector for one Meta ad account"""

    def __init__(self, access_token: str, account_id: str, priority: int = 0):
        super().__init__("Meta Ads")
        self.access_token = access_token
        self.account_id = normalize_account_id(account_id)
        self.priority = priority
        self.base_url = f"{settings.meta_graph_url.rstrip('/')}/{settings.meta_api_version}"
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> bool:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=60))
        return True

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def validate_connection(self) -> bool:
        account = await self.fetch_account()
        return bool(account.get("id"))

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single Graph API GET; error bodies raise MetaApiError"""
        await self.connect()
        query = dict(params or {})
        query.setdefault("access_token", self.access_token)

        async with self.session.get(url, params=query) as response:
            try:
                payload = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                payload = {}

            if response.status >= 400 or (isinstance(payload, dict) and "error" in payload):
                error = payload.get("error", {}) if isinstance(payload, dict) else {}
                message = error.get("message") or f"Meta API request failed with status {response.status}"
                raise MetaApiError(message, status=response.status, error=error)

            return payload

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        return await with_meta_rate_limit(
            self.account_id,
            lambda: self._request(url, params),
            priority=self.priority,
            request_id=f"{self.account_id}:{path}",
        )

    async def _get_all(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Follow paging.next until the edge is exhausted"""
        params = dict(params)
        params.setdefault("limit", settings.meta_page_limit)

        page = await self._get(path, params)
        rows = list(page.get("data", []))
        pages = 1

        while page.get("paging", {}).get("next"):
            next_url = page["paging"]["next"]
            page = await with_meta_rate_limit(
                self.account_id,
                lambda: self._request(next_url),
                priority=self.priority,
                request_id=f"{self.account_id}:{path}:page{pages + 1}",
            )
            rows.extend(page.get("data", []))
            pages += 1

        log.debug(f"Fetched {len(rows)} rows from {path} in {pages} pages")
        return rows

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    async def fetch_account(self) -> Dict[str, Any]:
        return await self._get(self.account_id, {"fields": "id,name,account_status,currency,created_time"})

    async def fetch_campaigns(self) -> List[Dict[str, Any]]:
        rows = await self._get_all(f"{self.account_id}/campaigns", {"fields": CAMPAIGN_FIELDS})
        return [
            {
                "campaign_id": row.get("id"),
                "name": row.get("name"),
                "status": row.get("status"),
                "objective": row.get("objective"),
                # Budgets come back in minor currency units
                "daily_budget": to_float(row.get("daily_budget")) / 100 if row.get("daily_budget") else None,
                "lifetime_budget": to_float(row.get("lifetime_budget")) / 100 if row.get("lifetime_budget") else None,
                "created_time": row.get("created_time"),
            }
            for row in rows
        ]

    async def fetch_insights(self, start_date, end_date) -> List[Dict[str, Any]]:
        """Daily campaign-level insights for [start_date, end_date]"""
        rows = await self._get_all(f"{self.account_id}/insights", {
            "level": "campaign",
            "time_increment": 1,
            "time_range": json.dumps({"since": _day(start_date), "until": _day(end_date)}),
            "fields": INSIGHT_FIELDS,
        })
        return [
            {
                "campaign_id": row.get("campaign_id"),
                "campaign_name": row.get("campaign_name"),
                "date": row.get("date_start"),
                "spend": to_float(row.get("spend")),
                "impressions": to_int(row.get("impressions")),
                "clicks": to_int(row.get("clicks")),
                "reach": to_int(row.get("reach")),
                "ctr": to_float(row.get("ctr")),
                "cpc": to_float(row.get("cpc")),
                "cpm": to_float(row.get("cpm")),
                "purchases": _purchase_total(row.get("actions")),
                "purchase_value": _purchase_total(row.get("action_values")),
            }
            for row in rows
        ]

    async def fetch_demographics(self, start_date, end_date) -> List[Dict[str, Any]]:
        """Daily account-level spend split by age and gender"""
        rows = await self._get_all(f"{self.account_id}/insights", {
            "level": "account",
            "time_increment": 1,
            "breakdowns": "age,gender",
            "time_range": json.dumps({"since": _day(start_date), "until": _day(end_date)}),
            "fields": DEMOGRAPHIC_FIELDS,
        })
        return [
            {
                "date": row.get("date_start"),
                "age": row.get("age") or "unknown",
                "gender": row.get("gender") or "unknown",
                "spend": to_float(row.get("spend")),
                "impressions": to_int(row.get("impressions")),
                "clicks": to_int(row.get("clicks")),
                "reach": to_int(row.get("reach")),
            }
            for row in rows
        ]

    async def fetch_data(
        self,
        start_date: datetime,
        end_date: datetime,
        entities: Sequence[str] = ENTITIES,
    ) -> Dict[str, Any]:
        """Fetch the requested entities for the window"""
        unknown = set(entities) - set(ENTITIES)
        if unknown:
            raise ValueError(f"Unknown Meta entities: {sorted(unknown)}")

        log.info(f"Fetching Meta {', '.join(entities)} for {self.account_id} {_day(start_date)} to {_day(end_date)}")

        data: Dict[str, Any] = {"account_id": self.account_id}
        if "campaigns" in entities:
            data["campaigns"] = await self.fetch_campaigns()
        if "insights" in entities:
            data["insights"] = await self.fetch_insights(start_date, end_date)
        if "demographics" in entities:
            data["demographics"] = await self.fetch_demographics(start_date, end_date)

        log.info(
            f"Meta fetch complete for {self.account_id}: "
            + ", ".join(f"{len(data[e])} {e}" for e in entities)
        )
        return data
