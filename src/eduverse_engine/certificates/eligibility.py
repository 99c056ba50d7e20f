"""Certificate eligibility and credential additions."""

import logging
from dataclasses import dataclass
from typing import Optional

from eduverse_engine.certificates.models import CREDENTIAL_SCOPE, Credential, EligibilityResult
from eduverse_engine.common.config import EduverseSettings
from eduverse_engine.common.exceptions import NotEligibleError
from eduverse_engine.common.scheduling import Clock
from eduverse_engine.ledger.operations import LedgerOperation, OperationType, ViewKind
from eduverse_engine.licensing.state import LicenseStateMachine
from eduverse_engine.progress.aggregator import ProgressAggregator
from eduverse_engine.reconciliation.coordinator import (
    Listener,
    Mutation,
    Reconciliation,
    ReconciliationCoordinator,
)
from eduverse_engine.reconciliation.views import ViewKey

logger = logging.getLogger(__name__)

COURSE_INCOMPLETE = "COURSE_INCOMPLETE"
ALREADY_IN_CREDENTIAL = "ALREADY_IN_CREDENTIAL"
NO_LICENSE = "NO_LICENSE"
DUPLICATE_IN_BATCH = "DUPLICATE_IN_BATCH"


@dataclass(frozen=True)
class CredentialChange:
    reconciliation: Reconciliation
    resource_ids: tuple[str, ...]
    price: int
    minted: bool

    @property
    def credential(self) -> Optional[Credential]:
        return self.reconciliation.view.value


class CertificateEligibilityEngine:
    """Decides which completed courses can join a subject's credential and adds them.

    A course is eligible when it is fully completed, not yet in the
    credential and was licensed at some point (unless
    ``allow_unlicensed_certificates`` is set).
    """

    def __init__(
        self,
        settings: EduverseSettings,
        coordinator: ReconciliationCoordinator,
        progress: ProgressAggregator,
        licenses: LicenseStateMachine,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings
        self.coordinator = coordinator
        self.progress = progress
        self.licenses = licenses
        self.clock = clock or Clock()

    def _key(self, subject_id: str) -> ViewKey:
        return ViewKey(subject_id, CREDENTIAL_SCOPE, ViewKind.CREDENTIAL)

    async def credential(self, subject_id: str) -> Optional[Credential]:
        return (await self.coordinator.read(self._key(subject_id))).value

    def price_for(self, credential: Optional[Credential], count: int) -> int:
        """Mint price covers the first course of a new credential; each further course costs the add price."""
        if count <= 0:
            return 0
        if credential is None or credential.total_courses_completed == 0:
            return self.settings.certificate_mint_price + self.settings.certificate_add_price * (count - 1)
        return self.settings.certificate_add_price * count

    async def check(
        self,
        subject_id: str,
        resource_id: str,
        credential: Optional[Credential] = None,
    ) -> EligibilityResult:
        if credential is None:
            credential = await self.credential(subject_id)
        first = credential is None or credential.total_courses_completed == 0

        reason = None
        progress = await self.progress.course_progress(subject_id, resource_id)
        if not progress.is_fully_completed:
            reason = COURSE_INCOMPLETE
        elif credential is not None and credential.contains(resource_id):
            reason = ALREADY_IN_CREDENTIAL
        elif not self.settings.allow_unlicensed_certificates:
            status = await self.licenses.status(subject_id, resource_id)
            if not status.has_license:
                reason = NO_LICENSE

        return EligibilityResult(
            resource_id=resource_id,
            eligible=reason is None,
            reason=reason,
            is_first_certificate=first,
            price=self.price_for(credential, 1),
        )

    async def is_eligible(self, subject_id: str, resource_id: str) -> bool:
        return (await self.check(subject_id, resource_id)).eligible

    async def add_to_credential(
        self,
        subject_id: str,
        resource_id: str,
        on_update: Optional[Listener] = None,
    ) -> CredentialChange:
        return await self.add_multiple(subject_id, [resource_id], on_update=on_update)

    async def add_multiple(
        self,
        subject_id: str,
        resource_ids: list[str],
        on_update: Optional[Listener] = None,
    ) -> CredentialChange:
        """Add every course in ``resource_ids`` in one ledger operation.

        The whole batch is validated first; if any course fails, nothing is
        submitted and ``NotEligibleError.reasons`` names every failure.
        """
        if not resource_ids:
            raise ValueError("resource_ids must not be empty")

        credential = await self.credential(subject_id)
        reasons: dict[str, str] = {}
        seen: set[str] = set()
        for resource_id in resource_ids:
            if resource_id in seen:
                reasons[resource_id] = DUPLICATE_IN_BATCH
                continue
            seen.add(resource_id)
            result = await self.check(subject_id, resource_id, credential)
            if not result.eligible:
                reasons[resource_id] = result.reason
        if reasons:
            raise NotEligibleError(
                f"{len(reasons)} of {len(resource_ids)} courses not eligible", reasons=reasons,
            )

        batch = tuple(resource_ids)
        quoted: dict[str, object] = {}

        def plan(current: Optional[Credential]) -> Mutation:
            # membership may have changed while we were validating
            members = {r: ALREADY_IN_CREDENTIAL for r in batch if current and current.contains(r)}
            if members:
                raise NotEligibleError("Already in credential", reasons=members)
            now = self.clock.now()
            minted = current is None or current.total_courses_completed == 0
            price = self.price_for(current, len(batch))
            quoted.update(price=price, minted=minted)
            updated = (current or Credential(holder_id=subject_id)).with_resources(list(batch), now)
            operation = LedgerOperation.build(
                OperationType.ADD_TO_CREDENTIAL, subject_id, CREDENTIAL_SCOPE,
                resource_ids=list(batch),
                mint=minted,
                price=price,
            )
            return Mutation(operation, updated)

        result = await self.coordinator.perform(self._key(subject_id), plan, on_update=on_update)
        logger.info("Credential add %s for %s: %s", result.status.value, subject_id, ",".join(batch))
        return CredentialChange(
            reconciliation=result,
            resource_ids=batch,
            price=quoted["price"],
            minted=quoted["minted"],
        )

    async def quote(self, subject_id: str, resource_ids: list[str]) -> int:
        return self.price_for(await self.credential(subject_id), len(resource_ids))
