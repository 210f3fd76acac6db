from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from clinicops.core.clock import Clock, system_clock
from clinicops.database import SessionLocal, get_db
from clinicops.services.directory import UserDirectory
from clinicops.services.permissions import Actor
from clinicops.services.transports import ChannelTransports
from clinicops.utils.security import verify_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

_transports = None


async def get_current_actor(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(token)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None or not isinstance(user_id, str):
        raise credentials_exception

    entry = UserDirectory(db).get(user_id)
    if entry is None or not entry.is_active:
        raise credentials_exception

    return Actor(user_id=entry.id, role=entry.role)


def get_clock() -> Clock:
    return system_clock


def get_transports() -> ChannelTransports:
    global _transports
    if _transports is None:
        _transports = ChannelTransports.from_settings(SessionLocal)
    return _transports
