"""
Ref Code Resolver

Maps a referral code to its affiliate and clinic. Public lookups fail
closed: unknown, inactive, suspended or ambiguous codes all produce the
same "not valid" answer so codes cannot be enumerated.
"""
import logging
import random
import re
import string
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.core.exceptions import AffiliateEngineError, ConflictError, NotFoundError
from affiliate_engine.models.affiliate import Affiliate, AffiliateRefCode
from affiliate_engine.models.clinic import Clinic
from affiliate_engine.schemas.affiliate import PublicRefCodeResponse

logger = logging.getLogger(__name__)

REF_CODE_RE = re.compile(r"^[A-Z0-9_-]{3,32}$")


def normalize_ref_code(code: Optional[str]) -> str:
    """Trim and upper-case a ref code as typed or carried in a URL."""
    return (code or "").strip().upper()


@dataclass
class ResolvedRefCode:
    """Internal resolution result with full records."""
    ref_code: AffiliateRefCode
    affiliate: Affiliate
    clinic: Clinic

    def to_public(self) -> PublicRefCodeResponse:
        return PublicRefCodeResponse(
            valid=True,
            ref_code=self.ref_code.ref_code,
            affiliate_name=self.affiliate.display_name,
            clinic_id=self.clinic.id,
            clinic_name=self.clinic.name,
            branding=self.clinic.branding,
        )


INVALID_REF_CODE = PublicRefCodeResponse(valid=False)


class RefCodeService:
    """Resolve, generate and register affiliate ref codes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_clinic_by_domain(self, domain: str) -> Optional[Clinic]:
        host = domain.split(":")[0].strip().lower()
        if not host:
            return None
        result = await self.db.execute(select(Clinic).where(Clinic.domain == host))
        return result.scalar_one_or_none()

    async def resolve(
        self,
        code: str,
        clinic_id: Optional[uuid.UUID] = None,
        clinic_domain: Optional[str] = None,
    ) -> Optional[ResolvedRefCode]:
        """
        Resolve a ref code to its active affiliate and clinic.

        Args:
            code: Code as received (any case, surrounding whitespace allowed)
            clinic_id: Explicit clinic context
            clinic_domain: Request host, used when clinic_id is not given

        Returns:
            ResolvedRefCode, or None when the code is not valid for any reason
        """
        normalized = normalize_ref_code(code)
        if not normalized or len(normalized) > 50:
            return None

        if clinic_id is None and clinic_domain:
            clinic = await self.find_clinic_by_domain(clinic_domain)
            if clinic is None:
                return None
            clinic_id = clinic.id

        base = (
            select(AffiliateRefCode, Affiliate, Clinic)
            .join(Affiliate, Affiliate.id == AffiliateRefCode.affiliate_id)
            .join(Clinic, Clinic.id == AffiliateRefCode.clinic_id)
        )
        if clinic_id is not None:
            base = base.where(AffiliateRefCode.clinic_id == clinic_id)

        rows = (await self.db.execute(base.where(AffiliateRefCode.ref_code == normalized))).all()
        if not rows:
            # Rows written before codes were normalized on insert
            rows = (
                await self.db.execute(base.where(func.upper(AffiliateRefCode.ref_code) == normalized))
            ).all()

        if len(rows) != 1:
            if len(rows) > 1:
                logger.info(f"Ref code {normalized} is ambiguous without clinic context")
            return None

        ref_code, affiliate, clinic = rows[0]
        if not ref_code.is_active or not affiliate.is_active or not clinic.is_active:
            return None

        return ResolvedRefCode(ref_code=ref_code, affiliate=affiliate, clinic=clinic)

    async def resolve_public(
        self,
        code: str,
        clinic_id: Optional[uuid.UUID] = None,
        clinic_domain: Optional[str] = None,
    ) -> PublicRefCodeResponse:
        resolved = await self.resolve(code, clinic_id=clinic_id, clinic_domain=clinic_domain)
        return resolved.to_public() if resolved else INVALID_REF_CODE

    # ========================================================================
    # Registration
    # ========================================================================

    async def _code_taken(self, clinic_id: uuid.UUID, code: str) -> bool:
        result = await self.db.execute(
            select(AffiliateRefCode.id).where(
                AffiliateRefCode.clinic_id == clinic_id,
                func.upper(AffiliateRefCode.ref_code) == code,
            )
        )
        return result.first() is not None

    async def generate_ref_code(self, clinic_id: uuid.UUID, name: str) -> str:
        """
        Generate a unique code from the affiliate name.
        Example: JANE4K7Q (first 4 letters of name + 4 random)
        """
        prefix = ''.join(c for c in name.upper() if c.isalpha())[:4]
        if len(prefix) < 4:
            prefix = prefix.ljust(4, 'X')

        while True:
            suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=4))
            code = f"{prefix}{suffix}"
            if not await self._code_taken(clinic_id, code):
                return code

    async def create_ref_code(
        self,
        affiliate: Affiliate,
        code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> AffiliateRefCode:
        """Register a code for an affiliate. Raises ConflictError when taken in the clinic."""
        if code:
            normalized = normalize_ref_code(code)
            if not REF_CODE_RE.match(normalized):
                raise AffiliateEngineError(
                    "Ref code must be 3-32 characters of letters, digits, '-' or '_'",
                    error_code="INVALID_REF_CODE",
                    details={"ref_code": code},
                )
            if await self._code_taken(affiliate.clinic_id, normalized):
                raise ConflictError(
                    f"Ref code {normalized} is already in use",
                    error_code="DUPLICATE_REF_CODE",
                    details={"ref_code": normalized},
                )
        else:
            normalized = await self.generate_ref_code(affiliate.clinic_id, affiliate.display_name)

        ref_code = AffiliateRefCode(
            clinic_id=affiliate.clinic_id,
            affiliate_id=affiliate.id,
            ref_code=normalized,
            description=description,
            is_active=True,
        )
        self.db.add(ref_code)
        await self.db.flush()
        logger.info(f"Ref code {normalized} created for affiliate {affiliate.id}")
        return ref_code

    async def set_active(self, clinic_id: uuid.UUID, ref_code_id: uuid.UUID, is_active: bool) -> AffiliateRefCode:
        result = await self.db.execute(
            select(AffiliateRefCode).where(
                AffiliateRefCode.id == ref_code_id,
                AffiliateRefCode.clinic_id == clinic_id,
            )
        )
        ref_code = result.scalar_one_or_none()
        if ref_code is None:
            raise NotFoundError("Ref code not found")
        ref_code.is_active = is_active
        await self.db.flush()
        return ref_code
