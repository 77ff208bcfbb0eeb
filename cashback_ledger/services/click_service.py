import logging
import uuid
from decimal import Decimal
from typing import Optional, List
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import NotFoundError, ValidationError
from ..database_model.account import Account
from ..database_model.click import Click
from ..database_model.store import Store, CashbackType
from ..utils.atomic import run_atomic
from ..utils.money import to_non_negative_amount

logger = logging.getLogger(__name__)


def build_affiliate_link(base_link: str, click_id: str) -> str:
    """Embed `click_id` into an outbound affiliate URL.

    The store's `{CLICK_ID}` placeholder is substituted when present,
    otherwise the id is appended as a query parameter.
    """
    placeholder = settings.click_id_placeholder
    if placeholder in base_link:
        return base_link.replace(placeholder, click_id)

    parts = urlsplit(base_link)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((settings.click_id_query_param, click_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ClickService:
    """Click attribution store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_store(self, store_id: str) -> Store:
        store = await self.db.get(Store, store_id)
        if not store:
            raise NotFoundError(f"Store {store_id} not found")
        return store

    async def get_click(self, click_id: str) -> Optional[Click]:
        result = await self.db.execute(select(Click).where(Click.click_id == click_id))
        return result.scalar_one_or_none()

    async def record_click(
        self,
        store_id: str,
        account_id: Optional[str] = None,
        coupon_id: Optional[str] = None,
        product_id: Optional[str] = None,
        link_override: Optional[str] = None,
        user_agent: Optional[str] = None,
        cashback_type: Optional[str] = None,
        cashback_rate_value: Optional[Decimal] = None
    ) -> Click:
        """Record an outbound redirect and return it with its generated click id.

        `link_override` is a coupon or product link to use instead of the
        store's; `cashback_type`/`cashback_rate_value` snapshot a
        product-specific rate shown to the user.
        """
        if (cashback_type is None) != (cashback_rate_value is None):
            raise ValidationError("cashback_type and cashback_rate_value must be given together")
        if cashback_type is not None:
            if cashback_type not in {t.value for t in CashbackType}:
                raise ValidationError(f"Unknown cashback type '{cashback_type}'")
            cashback_rate_value = to_non_negative_amount(cashback_rate_value, "cashback_rate_value")

        async def work() -> Click:
            store = await self.get_store(store_id)
            if not store.is_active:
                raise ValidationError(f"Store {store_id} is not active")

            if account_id is not None:
                account = await self.db.get(Account, account_id, populate_existing=True)
                if not account:
                    raise NotFoundError(f"Account {account_id} not found")
                if account.is_disabled:
                    raise ValidationError("Account is disabled")

            click_id = str(uuid.uuid4())
            base_link = link_override or store.affiliate_link
            click = Click(
                click_id=click_id,
                account_id=account_id,
                store_id=store_id,
                coupon_id=coupon_id,
                product_id=product_id,
                affiliate_link=build_affiliate_link(base_link, click_id),
                original_link=base_link,
                user_agent=user_agent,
                clicked_cashback_type=cashback_type,
                clicked_cashback_rate_value=cashback_rate_value
            )
            self.db.add(click)
            return click

        click = await run_atomic(self.db, work, operation=f"click on store {store_id}")
        logger.info(f"Click {click.click_id} recorded for account {account_id or 'anonymous'} on store {store_id}")
        return click

    async def get_clicks_for_account(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Click]:
        result = await self.db.execute(
            select(Click)
            .where(Click.account_id == account_id)
            .order_by(Click.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
