from __future__ import annotations

import hashlib
from dataclasses import dataclass

from .settings import DeployConfig, settings


OPERATOR_ROLE = "roles/run.developer"
INVOKER_ROLE = "roles/run.invoker"
PUBLIC_MEMBER = "allUsers"


class IamError(ValueError):
    pass


@dataclass(frozen=True)
class ExecutionIdentity:
    """The one principal a unit runs as. It holds the operator role and nothing else."""

    account_id: str
    project: str
    roles: tuple[str, ...] = (OPERATOR_ROLE,)

    def __post_init__(self) -> None:
        if self.roles != (OPERATOR_ROLE,):
            raise IamError(f"The execution identity may only hold {OPERATOR_ROLE}, got {list(self.roles)}")

    @property
    def email(self) -> str:
        return f"{self.account_id}@{self.project}.iam.gserviceaccount.com"


@dataclass(frozen=True)
class InvokerBinding:
    """Opt-in anonymous invocation, kept separate from the identity's own grants."""

    unit: str
    member: str = PUBLIC_MEMBER
    role: str = INVOKER_ROLE


ACCOUNT_ID_MAX = 30


def account_id_for(unit_name: str) -> str:
    """Service account id for a unit, unique per unit name.

    Long names are shortened and suffixed with a hash of the full name.
    """
    account_id = f"{settings.app_name}-{unit_name}"
    if len(account_id) <= ACCOUNT_ID_MAX:
        return account_id
    digest = hashlib.sha1(account_id.encode()).hexdigest()[:8]
    return f"{account_id[: ACCOUNT_ID_MAX - 9].rstrip('-')}-{digest}"


def execution_identity(cfg: DeployConfig, unit_name: str) -> ExecutionIdentity:
    return ExecutionIdentity(account_id=account_id_for(unit_name), project=cfg.project)


def public_invoker(unit_name: str) -> InvokerBinding:
    return InvokerBinding(unit=unit_name)
