from __future__ import annotations

import pytest

from app.domain import (
    ContractVersion,
    DisplayMetadata,
    MarketStatus,
    Outcome,
    TokenType,
)
from app.errors import DataShapeError, InvalidRecord, NotFound
from chain.normalize import (
    V1MarketTuple,
    V2MarketTuple,
    canonicalize_market,
    detect_display,
    parse_market_tuple,
    parse_stable_market,
    parse_stake_tuple,
)
from fakes import ALICE, BOB, CREATOR, DAY, NOW, empty_v2_tuple, stable_market, v1_tuple, v2_tuple


def test_v1_tuple_maps_to_canonical_record():
    raw = v1_tuple(yes_total=5, no_total=7, resolved=True, outcome=True)

    record = canonicalize_market(ContractVersion.V1, 3, raw, participants=[ALICE.upper().replace("0X", "0x")])

    assert isinstance(parse_market_tuple(ContractVersion.V1, raw), V1MarketTuple)
    assert record.key == "pred_v1_3"
    assert set(record.pools) == {TokenType.ETH}
    assert record.pool(TokenType.ETH).total == 12
    assert record.outcome is Outcome.YES
    assert record.status is MarketStatus.RESOLVED
    assert record.resolution_deadline == NOW + 8 * DAY
    assert record.participants == [ALICE]
    assert record.total_stakes == 1
    assert record.resolver_hint == CREATOR
    assert record.resolver_is_approximate is True


def test_v2_tuple_maps_to_canonical_record_with_derived_resolution_deadline():
    raw = v2_tuple(yes_total=1, no_total=2, swipe_yes_total=30, swipe_no_total=40, approved=False)

    record = canonicalize_market(ContractVersion.V2, 9, raw, resolution_grace=DAY)

    assert isinstance(parse_market_tuple(ContractVersion.V2, raw), V2MarketTuple)
    assert record.pool(TokenType.SWIPE).yes == 30
    assert record.pool(TokenType.SWIPE).no == 40
    assert TokenType.USDC not in record.pools
    assert record.resolution_deadline == record.deadline + DAY
    assert record.approved is True
    assert record.outcome is Outcome.UNSET
    assert record.status is MarketStatus.ACTIVE
    assert record.end_date == "2023-11-15"
    assert record.end_time == "22:13"


def test_stable_pools_only_when_registered():
    raw = v2_tuple()

    registered = canonicalize_market(
        ContractVersion.V2, 4, raw, stable=parse_stable_market(stable_market(yes=11, no=22))
    )
    unregistered = canonicalize_market(
        ContractVersion.V2, 4, raw, stable=parse_stable_market(stable_market(registered=False))
    )

    assert registered.stable_pool_registered is True
    assert registered.pool(TokenType.USDC).total == 33
    assert unregistered.stable_pool_registered is False
    assert TokenType.USDC not in unregistered.pools


def test_zero_deadline_is_rejected():
    with pytest.raises(InvalidRecord):
        canonicalize_market(ContractVersion.V2, 5, v2_tuple(deadline=0))


def test_unwritten_id_is_not_found():
    with pytest.raises(NotFound):
        canonicalize_market(ContractVersion.V2, 99, empty_v2_tuple())


def test_v1_shape_is_rejected_for_v2():
    with pytest.raises(DataShapeError):
        canonicalize_market(ContractVersion.V2, 1, v1_tuple())


def test_wrong_field_type_is_flagged_not_coerced():
    raw = v2_tuple(yes_total="12")

    with pytest.raises(DataShapeError) as excinfo:
        parse_market_tuple(ContractVersion.V2, raw)

    assert "yesTotalAmount" in str(excinfo.value)


def test_chart_pool_address_is_taken_from_image_url():
    pool_url = "https://www.geckoterminal.com/base/pools/0xpool123?embed=1&info=0"

    assert detect_display(pool_url) == DisplayMetadata(include_chart=True, selected_crypto="0xpool123")
    assert detect_display("https://www.geckoterminal.com/chart.png") == DisplayMetadata(include_chart=True)
    assert detect_display("https://example.com/pools/0xabc") == DisplayMetadata()
    assert detect_display("") == DisplayMetadata()

    record = canonicalize_market(ContractVersion.V2, 1, v2_tuple(question="Will it pump?", image_url=pool_url))
    assert record.display.selected_crypto == "0xpool123"


def test_previous_display_metadata_is_preserved_field_by_field():
    raw = v2_tuple(image_url="https://www.geckoterminal.com/base/pools/0xpool123")
    first = canonicalize_market(ContractVersion.V2, 1, raw)
    assert first.display == DisplayMetadata(include_chart=True, selected_crypto="0xpool123")

    curated = first.with_display(DisplayMetadata(include_chart=True, selected_crypto="0xother", extras={"pinned": True}))
    second = canonicalize_market(ContractVersion.V2, 1, raw, previous=curated)
    assert second.display == curated.display

    # Unset cached fields are filled from the current image URL.
    blank = first.with_display(DisplayMetadata(extras={"pinned": True}))
    third = canonicalize_market(ContractVersion.V2, 1, raw, previous=blank)
    assert third.display == DisplayMetadata(include_chart=True, selected_crypto="0xpool123", extras={"pinned": True})

    plain = canonicalize_market(ContractVersion.V2, 1, v2_tuple(), previous=curated)
    assert plain.display == curated.display


def test_participants_include_stakers_and_drop_zero_address():
    record = canonicalize_market(
        ContractVersion.V2,
        1,
        v2_tuple(),
        participants=[BOB, "0x0000000000000000000000000000000000000000"],
        stakers=[ALICE],
    )

    assert record.participants == [ALICE, BOB]


def test_identical_input_yields_identical_record():
    raw = v2_tuple(yes_total=10, no_total=3)

    first = canonicalize_market(ContractVersion.V2, 2, raw, participants=[BOB, ALICE])
    second = canonicalize_market(ContractVersion.V2, 2, raw, participants=[ALICE, BOB], previous=first)

    assert first.to_dict() == second.to_dict()


def test_stake_tuples_per_token():
    eth = parse_stake_tuple(TokenType.ETH, [3, 4, True])
    usdc = parse_stake_tuple(TokenType.USDC, [5, 6, 100, 200, False])

    assert (eth.yes_amount, eth.no_amount, eth.claimed) == (3, 4, True)
    assert (usdc.yes_amount, usdc.no_amount, usdc.claimed) == (5, 6, False)

    with pytest.raises(DataShapeError):
        parse_stake_tuple(TokenType.USDC, [5, 6, False])
