# app/api/routers/wallet.py
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.domain.wallet.service import wallet_snapshot
from app.repo.db import get_session

router = APIRouter()


@router.get("/wallet")
async def get_wallet(user_id: str = Depends(get_current_user_id), session: AsyncSession = Depends(get_session)):
    snap = await wallet_snapshot(session, user_id)
    return {"ok": True, "wallet": snap.as_dict()}
