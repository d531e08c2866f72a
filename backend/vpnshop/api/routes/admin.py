"""
Admin API: read-only views of the shop for external dashboards.

- Store statistics (users, subscriptions, revenue)
- Promo code usage
- Top referrers
- Open support tickets (from the running bot)
"""
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from vpnshop.api.deps import get_db, require_admin_token
from vpnshop.schemas.stats import AdminStats, PromoStats, TopReferrer
from vpnshop.schemas.support import TicketRecord
from vpnshop.services import promo_service, referral_service, stats_service
from vpnshop.telegram.bot import current_runtime

router = APIRouter(dependencies=[Depends(require_admin_token)])


@router.get("/stats", response_model=AdminStats)
def get_stats(db: Session = Depends(get_db)):
    return stats_service.get_admin_stats(db)


@router.get("/promo-stats", response_model=List[PromoStats])
def get_promo_stats(db: Session = Depends(get_db)):
    return promo_service.promo_stats(db)


@router.get("/top-referrers", response_model=List[TopReferrer])
def get_top_referrers(limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return referral_service.get_top_referrers(db, limit=limit)


@router.get("/tickets", response_model=List[TicketRecord])
def get_tickets():
    """Open tickets, waiting first. Empty when the bot is not running."""
    rt = current_runtime()
    if rt is None:
        return []
    return [TicketRecord.model_validate(t) for t in rt.tickets.listing()]
