"""
Adapter registry: a two-level map role -> code -> adapter.

Registration is where adapters are checked against their role's
interface; a step never discovers at call time that its adapter lacks
the method its role requires.
"""

import logging
import re
from typing import Dict, Iterator, List, Optional

from core.config import settings
from core.exceptions import AdapterNotFoundError, AdapterRegistrationError
from engine.adapters import ROLE_INTERFACES, STEP_ROLES, Adapter, AdapterDefinition, AdapterRole
from schemas.pipeline import Step

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


class AdapterRegistry:
    """
    Lookup from (role, code) to adapter instance.

    Invariants:
        - codes are unique within a role
        - every code matches CODE_PATTERN
        - every adapter implements its role's interface
    """

    def __init__(self, max_adapters: Optional[int] = None):
        self.max_adapters = max_adapters if max_adapters is not None else settings.MAX_ADAPTERS
        self._adapters: Dict[AdapterRole, Dict[str, Adapter]] = {}

    def register(self, adapter: Adapter, role: Optional[AdapterRole] = None) -> Adapter:
        """
        Register an adapter instance under its declared role (or `role`).

        Raises:
            AdapterRegistrationError: Bad code, duplicate (role, code),
                interface mismatch or registry full
        """
        code = getattr(adapter, "code", None)
        try:
            role = AdapterRole(role or getattr(adapter, "role", None))
        except ValueError as e:
            raise AdapterRegistrationError(
                f"Adapter {code!r} does not declare a known role",
                context={"adapter_code": code},
                original_exception=e
            )
        context = {"role": role.value, "adapter_code": code}

        if not isinstance(code, str) or not CODE_PATTERN.match(code):
            raise AdapterRegistrationError(
                f"Adapter code {code!r} must start with a letter and contain only letters, digits, '_' or '-'",
                context=context
            )

        interface = ROLE_INTERFACES[role]
        if not isinstance(adapter, interface):
            raise AdapterRegistrationError(
                f"Adapter '{code}' does not implement the {role.value} interface ({interface.__name__})",
                context=context
            )

        by_code = self._adapters.setdefault(role, {})
        if code in by_code:
            raise AdapterRegistrationError(
                f"Adapter '{code}' is already registered for role {role.value}",
                context=context
            )

        if len(self) >= self.max_adapters:
            raise AdapterRegistrationError(
                f"Registry is full ({self.max_adapters} adapters)",
                context=context
            )

        by_code[code] = adapter
        logger.debug(f"Registered {role.value} adapter '{code}'")
        return adapter

    def unregister(self, role: AdapterRole, code: str) -> bool:
        removed = self._adapters.get(AdapterRole(role), {}).pop(code, None)
        return removed is not None

    def get(self, role: AdapterRole, code: str) -> Adapter:
        """Raises AdapterNotFoundError when nothing is registered under (role, code)"""
        adapter = self.find(role, code)
        if adapter is None:
            raise AdapterNotFoundError(
                f"No {AdapterRole(role).value} adapter registered with code '{code}'",
                context={"role": AdapterRole(role).value, "adapter_code": code}
            )
        return adapter

    def find(self, role: AdapterRole, code: Optional[str]) -> Optional[Adapter]:
        if code is None:
            return None
        return self._adapters.get(AdapterRole(role), {}).get(code)

    def resolve(self, step: Step) -> Adapter:
        """Adapter for a step, from its type and `config.adapterCode`"""
        step_type = step.step_type
        role = STEP_ROLES.get(step_type) if step_type else None
        if role is None:
            raise AdapterNotFoundError(
                f"Step '{step.key}' of type {step.type} does not use an adapter",
                context={"step_key": step.key, "step_type": step.type}
            )
        if not step.adapter_code:
            raise AdapterNotFoundError(
                f"Step '{step.key}' has no adapterCode",
                context={"step_key": step.key, "role": role.value}
            )
        return self.get(role, step.adapter_code)

    def definitions(self, role: Optional[AdapterRole] = None) -> List[AdapterDefinition]:
        roles = [AdapterRole(role)] if role else list(self._adapters)
        return [
            adapter.definition()
            for r in roles
            for adapter in self._adapters.get(r, {}).values()
        ]

    def __iter__(self) -> Iterator[Adapter]:
        for by_code in self._adapters.values():
            yield from by_code.values()

    def __len__(self) -> int:
        return sum(len(by_code) for by_code in self._adapters.values())

    def __contains__(self, item) -> bool:
        role, code = item
        return self.find(role, code) is not None
