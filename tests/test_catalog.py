from __future__ import annotations
import re

import pytest

from circdesk import ConflictError, CopyStatus, ValidationError
from circdesk import services


def test_register_duplicate_student(stocked):
    with pytest.raises(ConflictError):
        stocked.register_student("C22-0044", "Someone Else")


def test_add_book_generates_code(system):
    book = system.add_book("Florante at Laura", "Francisco Balagtas")

    assert re.fullmatch(r"BK-\d{4}", book.number_code)
    assert system.catalog.get_book(book.number_code).status is CopyStatus.AVAILABLE


def test_add_book_rejects_blank_title_and_taken_code(stocked):
    with pytest.raises(ValidationError):
        stocked.add_book("   ")
    with pytest.raises(ConflictError):
        stocked.add_book("Another", number_code="BK-0001")


def test_code_generation_gives_up_when_codes_are_taken(stocked, monkeypatch):
    calls = []

    def always_taken(low, high):
        calls.append((low, high))
        return 1

    monkeypatch.setattr(services.random, "randint", always_taken)

    with pytest.raises(ConflictError):
        stocked.add_book("No Room Left")

    assert len(calls) == services.NUMBER_CODE_ATTEMPTS
