"""
Credential vault: per-organization connection secrets.

The whole bundle (applicationId, clientSecret, certificateThumbprint) is
serialized and encrypted as one Fernet token, so an update is a single column
swap and concurrent edits can never merge into a half-old, half-new bundle.
"""
import json
import logging
import uuid
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from maes.core.config import settings
from maes.core.errors import ConflictError, NotFoundError, ValidationError
from maes.db.models import Organization
from maes.utils import utcnow

logger = logging.getLogger(__name__)

MASK_TOKEN = "••••••••••••••••"
CREDENTIAL_FIELDS = ("applicationId", "clientSecret", "certificateThumbprint")

_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Get or create Fernet instance for credential encryption."""
    global _fernet
    if _fernet is None:
        if not settings.CREDENTIALS_ENCRYPTION_KEY:
            raise RuntimeError(
                "CREDENTIALS_ENCRYPTION_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.CREDENTIALS_ENCRYPTION_KEY.encode())
    return _fernet


def encrypt_bundle(bundle: dict) -> str:
    return get_fernet().encrypt(json.dumps(bundle, sort_keys=True).encode()).decode()


def decrypt_bundle(blob: str) -> dict:
    try:
        return json.loads(get_fernet().decrypt(blob.encode()).decode())
    except InvalidToken:
        # Corrupted blob or rotated key; only a fresh store can repair it.
        raise ConflictError(
            "Stored credentials cannot be decrypted; re-enter them",
            {"fields": list(CREDENTIAL_FIELDS)},
        )


def normalize_bundle(credentials: dict) -> dict:
    """Validate and reduce input to the known fields; empty strings count as absent."""
    bundle = {}
    for field in CREDENTIAL_FIELDS:
        value = credentials.get(field)
        if isinstance(value, str):
            value = value.strip()
        bundle[field] = value or None

    if not bundle["applicationId"]:
        raise ValidationError("applicationId is required", {"field": "applicationId"})
    if not bundle["clientSecret"] and not bundle["certificateThumbprint"]:
        raise ValidationError(
            "Either clientSecret or certificateThumbprint must be provided",
            {"fields": ["clientSecret", "certificateThumbprint"]},
        )
    return bundle


def mask_bundle(bundle: Optional[dict]) -> dict:
    """Presence-only view: every present field becomes the mask token."""
    bundle = bundle or {}
    view = {field: (MASK_TOKEN if bundle.get(field) else None) for field in CREDENTIAL_FIELDS}
    view["configured"] = bool(bundle)
    return view


async def _get_organization(db: AsyncSession, organization_id: uuid.UUID) -> Organization:
    org = await db.get(Organization, organization_id)
    if not org:
        raise NotFoundError("Organization not found", {"organization_id": str(organization_id)})
    return org


async def store(db: AsyncSession, organization_id: uuid.UUID, credentials: dict) -> dict:
    """Replace the organization's credential bundle. Returns the masked view."""
    bundle = normalize_bundle(credentials)
    org = await _get_organization(db, organization_id)

    org.credentials_blob = encrypt_bundle(bundle)
    org.credentials_updated_at = utcnow()
    await db.commit()

    logger.info(f"Credentials replaced for organization {organization_id}")
    return mask_bundle(bundle)


async def retrieve(db: AsyncSession, organization_id: uuid.UUID, reveal: bool = False) -> dict:
    """
    Read the credential bundle.

    reveal=False returns presence-only mask tokens. reveal=True decrypts; the
    caller is responsible for having checked the principal may see secrets.
    """
    org = await _get_organization(db, organization_id)
    if not org.credentials_blob:
        return mask_bundle(None)

    bundle = decrypt_bundle(org.credentials_blob)
    if not reveal:
        return mask_bundle(bundle)

    logger.info(f"Credentials revealed for organization {organization_id}")
    view = {field: bundle.get(field) for field in CREDENTIAL_FIELDS}
    view["configured"] = True
    return view


def has_usable_credentials(org: Organization) -> bool:
    """applicationId plus at least one secret material is stored"""
    if not org.credentials_blob:
        return False
    bundle = decrypt_bundle(org.credentials_blob)
    return bool(bundle.get("applicationId")) and bool(
        bundle.get("clientSecret") or bundle.get("certificateThumbprint")
    )
