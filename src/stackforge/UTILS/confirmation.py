"""
Operator confirmation gates. Anything that is not an explicit yes is a no.
"""
from typing import Optional

import click

AFFIRMATIVE = {"y", "yes"}
TEARDOWN_TOKEN = "DELETE"


def parse_yes_no(answer: Optional[str]) -> bool:
    """
    Interprets a yes/no answer, defaulting to the non-destructive choice.

    :param answer: Raw operator input.
    :return: True only for an explicit affirmative.
    """
    if answer is None:
        return False
    return str(answer).strip().lower() in AFFIRMATIVE


class Confirmer:
    """
    Channel through which the operator approves destructive steps.
    """
    def confirm(self, prompt: str) -> bool:
        raise NotImplementedError

    def confirm_token(self, prompt: str, token: str) -> bool:
        raise NotImplementedError


class ClickConfirmer(Confirmer):
    """
    Interactive confirmation on the terminal.
    """
    def confirm(self, prompt: str) -> bool:
        try:
            answer = click.prompt(f"{prompt} (yes/no)", default="no", show_default=False)
        except click.Abort:
            return False
        return parse_yes_no(answer)

    def confirm_token(self, prompt: str, token: str) -> bool:
        try:
            answer = click.prompt(f"{prompt} Type '{token}' to confirm", default="", show_default=False)
        except click.Abort:
            return False
        return answer.strip() == token


class AutoConfirmer(Confirmer):
    """
    Non-interactive confirmation for CI runs.

    :param approve: Answer given to every yes/no gate.
    :param token: Token supplied up front for high-friction gates.
    """
    def __init__(self, approve: bool = True, token: Optional[str] = None):
        self.approve = approve
        self.token = token

    def confirm(self, prompt: str) -> bool:
        return self.approve

    def confirm_token(self, prompt: str, token: str) -> bool:
        return self.token is not None and self.token == token
