"""CRUD API for position-service credentials."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from vaultbridge.api.deps import get_current_user
from vaultbridge.database import get_session
from vaultbridge.models.credential import Credential
from vaultbridge.schemas.credential import CredentialCreate, CredentialRead, CredentialUpdate
from vaultbridge.services.encryption import decrypt, encrypt, mask

router = APIRouter(prefix="/api/credentials", tags=["credentials"], dependencies=[Depends(get_current_user)])


def _read(cred: Credential) -> CredentialRead:
    hint = mask(decrypt(cred.api_key_encrypted)) if cred.api_key_encrypted else ""
    return CredentialRead(
        id=cred.id,
        name=cred.name,
        position_service_host=cred.position_service_host,
        api_key_hint=hint,
        is_active=cred.is_active,
        created_at=cred.created_at,
    )


def _get_or_404(session: Session, cred_id: int) -> Credential:
    cred = session.get(Credential, cred_id)
    if not cred:
        raise HTTPException(status_code=404, detail="Credential not found")
    return cred


@router.get("", response_model=list[CredentialRead])
def list_credentials(session: Session = Depends(get_session)):
    return [_read(c) for c in session.exec(select(Credential)).all()]


@router.post("", response_model=CredentialRead, status_code=201)
def create_credential(data: CredentialCreate, session: Session = Depends(get_session)):
    cred = Credential(
        name=data.name,
        position_service_host=data.position_service_host,
        api_key_encrypted=encrypt(data.api_key) if data.api_key else "",
    )
    session.add(cred)
    session.commit()
    session.refresh(cred)
    return _read(cred)


@router.get("/{cred_id}", response_model=CredentialRead)
def get_credential(cred_id: int, session: Session = Depends(get_session)):
    return _read(_get_or_404(session, cred_id))


@router.put("/{cred_id}", response_model=CredentialRead)
def update_credential(cred_id: int, data: CredentialUpdate, session: Session = Depends(get_session)):
    cred = _get_or_404(session, cred_id)

    update_data = data.model_dump(exclude_unset=True)
    if "api_key" in update_data:
        key = update_data.pop("api_key")
        if key is not None:
            cred.api_key_encrypted = encrypt(key) if key else ""

    for key, value in update_data.items():
        setattr(cred, key, value)

    session.add(cred)
    session.commit()
    session.refresh(cred)
    return _read(cred)


@router.delete("/{cred_id}", status_code=204)
def delete_credential(cred_id: int, session: Session = Depends(get_session)):
    cred = _get_or_404(session, cred_id)
    session.delete(cred)
    session.commit()


@router.post("/{cred_id}/test")
async def test_credential(cred_id: int, session: Session = Depends(get_session)):
    """Check that the position service answers with this credential."""
    from vaultbridge.config import settings
    from vaultbridge.services.position_client import PositionLedgerClient

    cred = _get_or_404(session, cred_id)
    client = PositionLedgerClient(
        host=cred.position_service_host,
        api_key=decrypt(cred.api_key_encrypted) if cred.api_key_encrypted else "",
        timeout=settings.position_service_timeout,
    )
    try:
        return await client.test_connection()
    finally:
        await client.close()
