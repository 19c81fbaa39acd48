"""Navigation Controller: which question is on screen."""
from .ledger import AnswerLedger


class NavigationController:
    def __init__(self, length: int, index: int = 0):
        self.length = length
        self.index = 0
        if length:
            self.jump_to(min(max(index, 0), length - 1))

    @property
    def is_first(self) -> bool:
        return self.index == 0

    @property
    def is_last(self) -> bool:
        return self.length == 0 or self.index == self.length - 1

    def next(self) -> int:
        if self.index < self.length - 1:
            self.index += 1
        return self.index

    def previous(self) -> int:
        if self.index > 0:
            self.index -= 1
        return self.index

    def jump_to(self, index: int) -> int:
        if not 0 <= index < self.length:
            raise IndexError(f"Question index {index} outside 0..{self.length - 1}")
        self.index = index
        return self.index

    def select_and_advance(self, ledger: AnswerLedger, question_id: int, option: int) -> int:
        """Record an answer, then move on unless this is the last question."""
        ledger.select(question_id, option)
        if not self.is_last:
            self.next()
        return self.index
