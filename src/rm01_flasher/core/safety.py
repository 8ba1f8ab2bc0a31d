"""
Confirmation gating for destructive and operator-in-the-loop steps.

Centralizes all confirmation rules so the CLI and headless callers enforce
identical checks. The prompts themselves are injected callbacks: the CLI
wires them to typer prompts, tests wire them to fixed answers.
"""

import logging
from dataclasses import dataclass
from typing import Optional, List, Callable

from .errors import ConfirmationDeclined

logger = logging.getLogger(__name__)

# Confirmation token required for non-interactive destructive operations
CONFIRMATION_TOKEN = "ERASE"


@dataclass
class ConfirmationGate:
    """
    Operator confirmation capability.

    Attributes:
        interactive: Whether the prompt callbacks may be used
        assume_yes: Answer yes to ordinary (non-destructive) questions
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        prompt_confirmation: Callback(question, default) -> bool
        prompt_acknowledge: Callback(message) -> None; blocks until the
            operator has done something physical (plugged a cable, ...)
        show_details: Callback(details dict) -> None, called before a
            destructive confirmation
    """
    interactive: bool = True
    assume_yes: bool = False
    confirmation_token: Optional[str] = None

    prompt_confirmation: Optional[Callable[[str, bool], bool]] = None
    prompt_acknowledge: Optional[Callable[[str], None]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def confirm(self, question: str, default: bool = False) -> bool:
        """
        Ask a yes/no question.

        No timeout is imposed; physical setup time is operator-driven.
        Without an operator (non-interactive, no ``assume_yes``) the answer
        is no.
        """
        if self.assume_yes:
            logger.info(f"{question} -> yes (assumed)")
            return True
        if self.interactive and self.prompt_confirmation:
            answer = bool(self.prompt_confirmation(question, default))
            logger.info(f"{question} -> {'yes' if answer else 'no'}")
            return answer
        logger.warning(f"{question} -> no (no operator available)")
        return False

    def acknowledge(self, message: str) -> None:
        """Block until the operator acknowledges ``message``."""
        logger.info(message)
        if self.interactive and self.prompt_acknowledge and not self.assume_yes:
            self.prompt_acknowledge(message)

    @classmethod
    def headless(cls, answer: bool) -> "ConfirmationGate":
        """A gate that answers every question, destructive ones included, with ``answer``."""
        return cls(
            interactive=True,
            prompt_confirmation=lambda question, default: answer,
            prompt_acknowledge=lambda message: None,
        )


def require_destructive_confirmation(
    gate: ConfirmationGate,
    action: str,
    target: str,
    consequences: Optional[List[str]] = None,
) -> None:
    """
    Enforce confirmation before erasing or partitioning anything.

    Rules enforced:
    1. If a confirmation token is present: it must match exactly
    2. If interactive: show details and ask (default answer is no)
    3. Otherwise: deny

    ``assume_yes`` alone never authorizes a destructive action.

    Raises:
        ConfirmationDeclined: If the action is not permitted
    """
    details = {
        "action": action,
        "target": target,
        "consequences": list(consequences or []),
    }

    # Rule 1: Token-based confirmation for non-interactive
    if gate.confirmation_token is not None:
        if gate.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise ConfirmationDeclined(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        logger.warning(f"{action} on {target} confirmed by token")
        return

    # Rule 2: Interactive confirmation
    if gate.interactive and gate.prompt_confirmation:
        if gate.show_details:
            gate.show_details(details)
        if not gate.prompt_confirmation(f"{action} on {target}? All data will be lost", False):
            raise ConfirmationDeclined(
                f"{action} on {target} declined by operator",
                details=details,
            )
        logger.warning(f"{action} on {target} confirmed by operator")
        return

    # Rule 3: Nobody to ask
    raise ConfirmationDeclined(
        f"{action} on {target} requires confirmation. "
        f"Provide --confirm {CONFIRMATION_TOKEN} for non-interactive runs.",
        details=details,
    )
