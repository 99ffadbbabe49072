"""Approval protocol for destructive steps.

Each stage describes what it is about to execute as a :class:`Plan` and
hands it to an :class:`Approver`, which decides whether the stage may apply
it. Stages never prompt directly; policy (should we proceed) lives here and
mechanism (how we proceed) lives in the stages.

Gate keys used by the pipeline:
    target.device       which device to write to (ask)
    target.confirm      write to the resolved target
    target.unmount      unmount a mounted partition of the target
    target.create       create a missing target file
    target.file_size    size of a new target file in MB (ask)
    write.erase         wipe signatures and copy the image
    write.force_wipe    retry the wipe with force
    resize.offer        whether to resize at all
    resize.partition    partition index to grow (ask)
    resize.mode         "max" or "custom" (choose)
    resize.end          custom end offset in MB (ask)
    resize.apply        apply the computed resize
    uuid.apply          regenerate filesystem identifiers
    cleanup.archive     remove the original archive
    cleanup.image       remove the raw image
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence, TextIO, TypeVar

from fvf_burner.logging import LoggerFactory
from fvf_burner.storage.exceptions import CapacityWarning, OperationCancelled

T = TypeVar("T")

YES_ANSWERS = {"y", "yes"}
NO_ANSWERS = {"n", "no", ""}

log = LoggerFactory.for_system()


@dataclass(frozen=True)
class Plan:
    """What a stage will execute if approved."""

    key: str
    title: str
    commands: tuple[tuple[str, ...], ...] = ()
    details: tuple[str, ...] = ()
    forced: bool = False

    def render(self) -> str:
        lines = [self.title]
        lines.extend(f"  {detail}" for detail in self.details)
        if self.commands:
            lines.append("  Will run:")
            lines.extend(f"    $ {' '.join(command)}" for command in self.commands)
        return "\n".join(lines)


class Approver:
    """Decides whether planned steps are applied and supplies operator input."""

    def confirm(self, plan: Plan) -> bool:
        raise NotImplementedError

    def override(self, warning: CapacityWarning) -> bool:
        raise NotImplementedError

    def choose(self, key: str, prompt: str, options: Sequence[str]) -> str:
        raise NotImplementedError

    def ask(self, key: str, prompt: str, parse: Callable[[str], T]) -> T:
        raise NotImplementedError

    def inform(self, message: str) -> None:
        log.info(message)


class ConsoleApprover(Approver):
    """Terminal approver with optional preset answers.

    Args:
        answers: Preset answers by gate key; a preset is used instead of
            prompting (e.g. {"resize.offer": "no", "resize.end": "max"})
        assume_yes: Approve ordinary confirmation gates without prompting
        force: Approve capacity overrides and forced plans without prompting
    """

    def __init__(
        self,
        answers: Optional[Mapping[str, str]] = None,
        assume_yes: bool = False,
        force: bool = False,
        input_func: Callable[[str], str] = input,
        stream: TextIO = sys.stdout,
    ):
        self.answers = dict(answers or {})
        self.assume_yes = assume_yes
        self.force = force
        self.input_func = input_func
        self.stream = stream

    def _print(self, message: str) -> None:
        print(message, file=self.stream)

    def _read(self, prompt: str) -> Optional[str]:
        try:
            return self.input_func(prompt).strip()
        except EOFError:
            return None

    def _yes_no(self, prompt: str) -> bool:
        while True:
            answer = self._read(f"{prompt} [y/N]: ")
            if answer is None:
                return False
            normalized = answer.lower()
            if normalized in YES_ANSWERS:
                return True
            if normalized in NO_ANSWERS:
                return False
            self._print("Please answer 'y' or 'n'.")

    def confirm(self, plan: Plan) -> bool:
        self._print(plan.render())
        preset = self.answers.get(plan.key)
        if preset is not None:
            approved = preset.strip().lower() in YES_ANSWERS
            log.debug(f"Gate {plan.key} answered from preset: {approved}")
            return approved
        if plan.forced and self.force:
            return True
        if not plan.forced and self.assume_yes:
            return True
        return self._yes_no("Proceed?")

    def override(self, warning: CapacityWarning) -> bool:
        self._print(f"WARNING: {warning}")
        if self.force:
            log.warning(f"Capacity warning overridden by --force: {warning}")
            return True
        return self._yes_no("Continue anyway?")

    def choose(self, key: str, prompt: str, options: Sequence[str]) -> str:
        preset = self.answers.get(key)
        if preset is not None and preset in options:
            return preset
        if preset is not None:
            self._print(f"Ignoring invalid preset {preset!r} for {key}")
        while True:
            answer = self._read(f"{prompt} [{'/'.join(options)}]: ")
            if answer is None:
                raise OperationCancelled(key)
            if answer in options:
                return answer
            self._print(f"Choose one of: {', '.join(options)}")

    def ask(self, key: str, prompt: str, parse: Callable[[str], T]) -> T:
        preset = self.answers.pop(key, None)
        if preset is not None:
            try:
                return parse(preset)
            except ValueError as error:
                self._print(f"Invalid value for {key}: {error}")
        while True:
            answer = self._read(f"{prompt}: ")
            if answer is None:
                raise OperationCancelled(key)
            try:
                return parse(answer)
            except ValueError as error:
                self._print(f"Invalid value: {error}")

    def inform(self, message: str) -> None:
        self._print(message)
