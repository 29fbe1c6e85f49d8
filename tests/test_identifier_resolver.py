from __future__ import annotations

from pathlib import Path

import pytest

from bulk_reconcile.reconcile_engine import (
    AmbiguousIdentifierError,
    IdentifierResolver,
    ReconcileError,
    UnknownIdentifierError,
)
from bulk_reconcile.staging_store import Scope, StagedItem
from bulk_reconcile.submission_store import Recipient, recipient_from_row


def _file(name: str) -> StagedItem:
    return StagedItem(Scope("k"), (), name, False, Path("/unused") / name)


def _dir(name: str) -> StagedItem:
    return StagedItem(Scope("k"), (), name, True, Path("/unused") / name)


def test_lookup_by_username_and_idnumber(roster: list[Recipient]) -> None:
    by_username = IdentifierResolver(roster, "username")
    by_idnumber = IdentifierResolver(roster, "idnumber")

    assert by_username.lookup("user07").id == "7"
    assert by_idnumber.lookup("007").id == "7"
    assert by_username.lookup("007") is None
    assert len(by_username) == 20


def test_effective_token_strips_only_last_extension() -> None:
    assert IdentifierResolver.effective_token(_file("user01.txt")) == "user01"
    assert IdentifierResolver.effective_token(_file("user01.tar.gz")) == "user01.tar"
    assert IdentifierResolver.effective_token(_file("user01")) == "user01"
    assert IdentifierResolver.effective_token(_dir("user01.d")) == "user01.d"


def test_resolve_uses_effective_token(roster: list[Recipient]) -> None:
    resolver = IdentifierResolver(roster, "username")
    assert resolver.resolve(_file("user03.pdf")).id == "3"
    assert resolver.resolve(_dir("user03")).id == "3"
    assert resolver.resolve(_dir("user03.pdf")) is None


def test_duplicate_token_is_ambiguous(roster: list[Recipient]) -> None:
    roster[0].fields["idnumber"] = "7"
    roster[1].fields["idnumber"] = "7"

    with pytest.raises(AmbiguousIdentifierError) as info:
        IdentifierResolver(roster, "idnumber")
    assert "idnumber = 7" in str(info.value)
    assert isinstance(info.value, ReconcileError)


def test_empty_tokens_do_not_participate() -> None:
    recipients = [
        recipient_from_row({"id": "1", "username": "alpha", "idnumber": ""}),
        recipient_from_row({"id": "2", "username": "beta", "idnumber": "   "}),
        recipient_from_row({"id": "3", "username": "gamma"}),
        recipient_from_row({"id": "4", "username": "delta", "idnumber": "X1"}),
    ]
    resolver = IdentifierResolver(recipients, "idnumber")
    assert len(resolver) == 1
    assert resolver.lookup("X1").id == "4"
    assert resolver.lookup("") is None


def test_tokens_are_stripped() -> None:
    resolver = IdentifierResolver([recipient_from_row({"id": "9", "username": " padded "})], "username")
    assert resolver.lookup("padded").id == "9"
    assert resolver.token_for(resolver.lookup("padded")) == "padded"


def test_lookup_or_fail(roster: list[Recipient]) -> None:
    resolver = IdentifierResolver(roster, "username")
    assert resolver.lookup_or_fail("user20").full_name == "Student 20"

    with pytest.raises(UnknownIdentifierError) as info:
        resolver.lookup_or_fail("userz1")
    assert str(info.value) == "userz1 is not a recipient in this roster"
    assert info.value.status_code == 404


def test_id_field_is_usable_as_token(roster: list[Recipient]) -> None:
    resolver = IdentifierResolver(roster, "id")
    assert resolver.lookup("12").fields["username"] == "user12"
