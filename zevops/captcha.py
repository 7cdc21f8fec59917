"""Arithmetic challenge gating irreversible actions.

It protects against accidental confirmation only; it is not a security
control.
"""

import random
from dataclasses import dataclass
from typing import Optional

OPERAND_MIN = 1
OPERAND_MAX = 10


@dataclass
class CaptchaChallenge:
    """A "what is a + b" question and the answer typed so far."""
    operand_a: int
    operand_b: int
    user_answer: str = ""

    @classmethod
    def generate(cls, rng: Optional[random.Random] = None) -> "CaptchaChallenge":
        rng = rng or random.SystemRandom()
        return cls(
            operand_a=rng.randint(OPERAND_MIN, OPERAND_MAX),
            operand_b=rng.randint(OPERAND_MIN, OPERAND_MAX),
        )

    @property
    def expected(self) -> int:
        return self.operand_a + self.operand_b

    @property
    def question(self) -> str:
        return f"What is {self.operand_a} + {self.operand_b}?"

    @property
    def is_valid(self) -> bool:
        try:
            return int(self.user_answer.strip()) == self.expected
        except ValueError:
            return False

    def answer(self, text: str) -> bool:
        """Record the user's answer and report whether it unlocks the action."""
        self.user_answer = text or ""
        return self.is_valid
