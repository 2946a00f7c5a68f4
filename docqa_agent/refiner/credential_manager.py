import asyncio
import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from docqa_agent.data.run_structures import Decision, InterventionKind, InterventionRecord
from docqa_agent.data.step_structures import ActionKind, RefinedStep, step_texts
from docqa_agent.refiner.interaction import DecisionPoint, HumanChannel, ask_human

PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
SECRET_NAME_PATTERN = re.compile(r"user(name)?|pass(word)?|e-?mail|api[_-]?key|token|secret|credential", re.I)


def is_secret_name(name: str) -> bool:
    return bool(SECRET_NAME_PATTERN.search(name))


def env_name(name: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", name.upper())


class CredentialResolution(BaseModel):
    names: List[str] = Field(default_factory=list)
    confirmed: bool = False
    steps: List[RefinedStep] = Field(default_factory=list)
    env_file: str = ".env"
    env_instructions: List[str] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)
    intervention: Optional[InterventionRecord] = None


class CredentialManager:
    """Finds secret placeholders in a step sequence and arranges for them to be loaded.

    One instance is shared by every context of a test. The operator is asked
    once per credential name; a later context that references new names is
    asked about those only.
    """

    def __init__(self, env_file: str = ".env", channel: Optional[HumanChannel] = None, timeout: Optional[float] = None):
        self.env_file = env_file
        self.channel = channel
        self.timeout = timeout
        self._decisions: Dict[str, Decision] = {}
        self._lock = asyncio.Lock()

    def scan(self, steps: List[RefinedStep]) -> List[str]:
        """Distinct credential names referenced by ``steps``, in first-seen order."""
        names = []
        for step in steps:
            for text in step_texts(step):
                for match in PLACEHOLDER_PATTERN.finditer(text):
                    name = env_name(match.group(1) or match.group(2))
                    if is_secret_name(name) and name not in names:
                        names.append(name)
        return names

    def normalize_placeholders(self, steps: List[RefinedStep]) -> List[RefinedStep]:
        """Rewrite secret placeholders to their upper-case ``$NAME`` form."""

        def replace(match):
            raw = match.group(1) or match.group(2)
            return f"${env_name(raw)}" if is_secret_name(raw) else match.group(0)

        def rewrite(value):
            if isinstance(value, str):
                return PLACEHOLDER_PATTERN.sub(replace, value)
            if isinstance(value, dict):
                return {k: rewrite(v) for k, v in value.items()}
            if isinstance(value, list):
                return [rewrite(v) for v in value]
            return value

        normalized = []
        for step in steps:
            update = {
                "target": rewrite(step.target),
                "value": rewrite(step.value),
                "params": rewrite(step.params),
                "description": rewrite(step.description),
            }
            normalized.append(step.model_copy(update=update))
        return normalized

    def env_instructions(self, names: List[str]) -> List[str]:
        return [f"{name}=your_{name.lower()}_here" for name in names]

    def loading_step(self) -> RefinedStep:
        return RefinedStep(
            kind=ActionKind.LOAD_VARIABLES,
            target=self.env_file,
            description="Load credentials from environment file",
            confidence=1.0,
        )

    def inject_loading_step(self, steps: List[RefinedStep]) -> List[RefinedStep]:
        """Put one variable-loading step in front. A sequence that already has one is returned unchanged."""
        if any(step.kind == ActionKind.LOAD_VARIABLES for step in steps):
            return list(steps)
        return [self.loading_step()] + list(steps)

    async def _decide(self, names: List[str], context: Optional[str]) -> Optional[InterventionRecord]:
        """Ask about the names no earlier call has decided on."""
        async with self._lock:
            unseen = [name for name in names if name not in self._decisions]
            if not unseen:
                return None
            if self.channel is None:
                self._decisions.update({name: Decision.DECLINE for name in unseen})
                logging.warning("No operator channel; credential placeholders left unresolved")
                return None
            point = DecisionPoint(
                kind=InterventionKind.CREDENTIAL_CONFIRMATION,
                message=f"The documentation references credentials: {', '.join(unseen)}. "
                f"Load them from {self.env_file} at run time?",
                presented={
                    "credentials": unseen,
                    "placeholders": [f"${name}" for name in unseen],
                    "env_file": self.env_file,
                    "env_instructions": self.env_instructions(unseen),
                },
                allowed=(Decision.CONFIRM, Decision.DECLINE),
                default=Decision.DECLINE,
                context=context,
            )
            response, record = await ask_human(self.channel, point, self.timeout)
            self._decisions.update({name: response.decision for name in unseen})
            return record

    async def resolve(self, steps: List[RefinedStep], context: Optional[str] = None) -> CredentialResolution:
        names = self.scan(steps)
        if not names:
            return CredentialResolution(steps=list(steps), env_file=self.env_file)

        record = await self._decide(names, context)
        steps = self.normalize_placeholders(steps)
        instructions = self.env_instructions(names)
        declined = [name for name in names if self._decisions[name] != Decision.CONFIRM]
        if len(declined) < len(names):
            logging.info(f"Credentials {names} will be loaded from {self.env_file}: " + "; ".join(instructions))
            steps = self.inject_loading_step(steps)
        if declined:
            logging.warning(f"Credential handling declined, steps referencing {declined} stay unresolved")
        return CredentialResolution(
            names=names,
            confirmed=not declined,
            steps=steps,
            env_file=self.env_file,
            env_instructions=instructions,
            unresolved=declined,
            intervention=record,
        )
