"""Role bindings per target scope.

Bindings are not stored anywhere by this engine: whether (scope, role,
member) exists is always derived from the scope's access-policy document.
Writes are read-modify-write per role, retried on etag conflicts and on
"member does not exist yet" propagation errors. Reads never write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from .provider import Binding, Policy, ProviderCaller, ProviderError
from .replication import ReplicationMap
from .retry import RetryExecutor, RetryExhaustedError

logger = logging.getLogger(__name__)


def has_role_binding(policy: Policy, role: str, member: str) -> bool:
    """Check whether member holds role in the policy."""
    return any(
        b.role == role and b.condition is None and member in b.members for b in policy.bindings
    )


def add_member(policy: Policy, role: str, member: str) -> bool:
    """Add member to the unconditional binding for role, creating it if needed.

    Returns:
        True if the policy changed.
    """
    for binding in policy.bindings:
        if binding.role == role and binding.condition is None:
            if member in binding.members:
                return False
            binding.members.append(member)
            return True
    policy.bindings.append(Binding(role=role, members=[member]))
    return True


def remove_member(policy: Policy, role: str, member: str) -> bool:
    """Remove member from role, dropping the binding when it becomes empty.

    Returns:
        True if the policy changed.
    """
    changed = False
    for binding in list(policy.bindings):
        if binding.role != role or binding.condition is not None:
            continue
        if member not in binding.members:
            continue
        binding.members = [m for m in binding.members if m != member]
        if not binding.members:
            policy.bindings.remove(binding)
        changed = True
    return changed


@dataclass
class ScopeBindingResult:
    """Per-scope outcome, keyed by configured role references."""

    scope_id: str
    bound: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """Every requested role succeeded."""
        return not self.failed and not self.skipped


class BindingReconciler:
    """Applies, verifies and removes role bindings in one scope at a time."""

    def __init__(self, caller: ProviderCaller, policy_retry: RetryExecutor) -> None:
        self._caller = caller
        self._policy_retry = policy_retry

    async def apply(
        self,
        scope_id: str,
        member: str,
        role_refs: list[str],
        replication_map: ReplicationMap,
    ) -> ScopeBindingResult:
        """Bind member to each role in scope_id.

        Roles with no scope-correct reference (replication failed) are
        skipped and reported, never bound with the raw reference. A failure
        for one role does not stop the remaining roles.
        """
        result = ScopeBindingResult(scope_id=scope_id)
        for role_ref in role_refs:
            if not replication_map.is_bindable(scope_id, role_ref):
                logger.warning(
                    "Role not replicated to scope, skipping binding",
                    extra={"scope": scope_id, "role": role_ref},
                )
                result.skipped.append(role_ref)
                continue

            actual_role = replication_map.resolve(scope_id, role_ref)
            try:
                await self._modify_policy(
                    scope_id,
                    lambda policy, r=actual_role: add_member(policy, r, member),
                    "add binding",
                )
            except (ProviderError, RetryExhaustedError) as e:
                logger.warning(
                    "Failed to add binding",
                    extra={"scope": scope_id, "role": actual_role, "error": str(e)},
                )
                result.failed.append(role_ref)
                continue
            result.bound.append(role_ref)

        logger.info(
            "Applied bindings",
            extra={
                "scope": scope_id,
                "bound_count": len(result.bound),
                "failed_count": len(result.failed) + len(result.skipped),
            },
        )
        return result

    async def verify(
        self,
        scope_id: str,
        member: str,
        role_refs: list[str],
        replication_map: ReplicationMap,
    ) -> bool:
        """Check every required binding against one fetch of the policy.

        Returns:
            False on the first missing binding (drift).

        Raises:
            ProviderError: If the policy cannot be read.
        """
        policy: Policy = await self._caller.call("get_iam_policy", scope_id)
        for role_ref in role_refs:
            actual_role = replication_map.resolve(scope_id, role_ref)
            if not has_role_binding(policy, actual_role, member):
                logger.info(
                    "Drift detected: binding missing",
                    extra={"scope": scope_id, "role": actual_role},
                )
                return False
        return True

    async def remove(
        self,
        scope_id: str,
        member: str,
        role_refs: list[str],
        replication_map: ReplicationMap,
    ) -> ScopeBindingResult:
        """Remove member from each role in scope_id; absent bindings count as removed."""
        result = ScopeBindingResult(scope_id=scope_id)
        for role_ref in role_refs:
            actual_role = replication_map.resolve(scope_id, role_ref)
            try:
                await self._modify_policy(
                    scope_id,
                    lambda policy, r=actual_role: remove_member(policy, r, member),
                    "remove binding",
                )
            except (ProviderError, RetryExhaustedError) as e:
                if isinstance(e, ProviderError) and e.not_found:
                    result.removed.append(role_ref)
                    continue
                logger.warning(
                    "Failed to remove binding",
                    extra={"scope": scope_id, "role": actual_role, "error": str(e)},
                )
                result.failed.append(role_ref)
                continue
            result.removed.append(role_ref)
        return result

    async def _modify_policy(
        self,
        scope_id: str,
        mutate: Callable[[Policy], bool],
        operation: str,
    ) -> bool:
        """Read-modify-write the scope's policy, re-reading on every attempt.

        Returns:
            True if a write happened, False if the policy already matched.
        """

        async def attempt() -> bool:
            policy: Policy = await self._caller.call("get_iam_policy", scope_id)
            if not mutate(policy):
                return False
            await self._caller.call("set_iam_policy", scope_id, policy)
            return True

        return await self._policy_retry.run(f"{operation} in {scope_id}", attempt)
