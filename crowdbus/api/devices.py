"""Device trust lookup."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crowdbus.core.exceptions import ResourceNotFoundError
from crowdbus.core.repository import get_trust_record, hash_device_id
from crowdbus.db.session import get_session
from crowdbus.schemas.device import DeviceTrust

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.get("/{device_id}/trust", response_model=DeviceTrust)
async def get_device_trust(device_id: str, session: AsyncSession = Depends(get_session)):
    """Trust and reputation of a device, looked up by its raw token."""
    record = await get_trust_record(session, hash_device_id(device_id))
    if record is None:
        raise ResourceNotFoundError("Device")
    return record
