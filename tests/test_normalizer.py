from datetime import datetime, timezone

import pytest

from formatting import PLACEHOLDER
from models import Category
from normalizer import (
    FINAL_STRETCH_LOWER_RESERVE,
    FINAL_STRETCH_UPPER_RESERVE,
    bonding_curve_progress,
    normalize_batch,
    process_final_stretch_data,
    process_migrated_data,
    process_new_pair_data,
)
from tests.fakes import PUMP_MINT_A, WSOL, migration_row, new_pair_row, pool_row

NOW = datetime(2024, 5, 1, 12, 5, 0, tzinfo=timezone.utc)


def test_new_pair_uses_placeholders_for_market_fields():
    record = process_new_pair_data(new_pair_row("MintNew111", name="Doge Two", symbol="DOGE2"), NOW)

    assert record.id == "MintNew111"
    assert record.mint_address == "MintNew111"
    assert record.category == Category.NEW_PAIR
    assert record.name == "Doge Two"
    assert record.symbol == "DOGE2"
    assert record.price_display == PLACEHOLDER
    assert record.market_cap_display == PLACEHOLDER
    assert record.stats_placeholder is True
    assert record.holders is None
    assert record.age_seconds == 300
    assert record.age_display == "5m"
    assert record.uri == "https://ipfs.io/ipfs/meta"
    assert record.tags == ["Pump", "DS"]


def test_new_pair_name_falls_back_to_symbol():
    row = new_pair_row("MintNew222", name="", symbol="ABC")
    assert process_new_pair_data(row, NOW).name == "ABC"


def test_new_pair_without_mint_is_skipped():
    row = new_pair_row("")
    assert process_new_pair_data(row, NOW) is None


def test_bonding_curve_progress_window():
    assert bonding_curve_progress(FINAL_STRETCH_LOWER_RESERVE) == pytest.approx(95.0)
    assert bonding_curve_progress(FINAL_STRETCH_UPPER_RESERVE) == pytest.approx(100.0)
    midpoint = (FINAL_STRETCH_LOWER_RESERVE + FINAL_STRETCH_UPPER_RESERVE) / 2
    assert bonding_curve_progress(midpoint) == pytest.approx(97.5)
    assert bonding_curve_progress(FINAL_STRETCH_UPPER_RESERVE * 2) == 100.0
    assert bonding_curve_progress(0) == 0.0


def test_final_stretch_requires_protocol_suffix():
    assert process_final_stretch_data(pool_row("SomeMintWithoutSuffix"), NOW) is None
    assert process_final_stretch_data(pool_row(WSOL), NOW) is None


def test_final_stretch_record():
    row = pool_row(PUMP_MINT_A, base_reserve=FINAL_STRETCH_LOWER_RESERVE, price_usd=0.00005, liquidity_usd=25_000)
    record = process_final_stretch_data(row, NOW)

    assert record.category == Category.FINAL_STRETCH
    assert record.progress == pytest.approx(95.0)
    assert record.price_display == "$0.000050"
    assert record.market_cap_display == "$50K"
    assert record.volume_display == "$25K"
    assert record.tags == ["pump", "95%"]
    assert record.stats_placeholder is False


def test_migrated_takes_first_protocol_mint():
    row = migration_row([None, WSOL, PUMP_MINT_A, "OtherMintpump"],
                        base_amount_in="200000000000000", quote_amount_in="80000000000")
    record = process_migrated_data(row, NOW)

    assert record.mint_address == PUMP_MINT_A
    assert record.category == Category.MIGRATED
    assert record.name == "Unknown"
    assert record.symbol == "???"
    # 80 SOL for 200M tokens
    assert record.price_display == "0.000000 SOL"
    assert record.volume_display == "80.00 SOL"
    assert record.market_cap_display == "200.0M"
    assert record.tags == ["Pump AMM", "Migrated"]


def test_migrated_without_protocol_mint_is_skipped():
    assert process_migrated_data(migration_row([WSOL, "PlainMint"]), NOW) is None


def test_migrated_missing_arguments_default_to_zero():
    row = migration_row([PUMP_MINT_A], base_amount_in=None, quote_amount_in=None)
    record = process_migrated_data(row, NOW)

    assert record.price_display == "0.000000 SOL"
    assert record.volume_display == "0.000000 SOL"


def test_migrated_reads_plain_integer_values():
    row = migration_row([PUMP_MINT_A], base_amount_in=None, quote_amount_in=None)
    row["Instruction"]["Program"]["Arguments"] = [
        {"Name": "base_amount_in", "Value": {"integer": 1_000_000}},
        {"Name": "quote_amount_in", "Value": {"integer": 2_000_000_000}},
    ]
    record = process_migrated_data(row, NOW)

    assert record.price_display == "2.00 SOL"


def test_normalize_batch_keeps_order_and_skips_bad_rows():
    rows = [
        new_pair_row("MintA"),
        {"Block": {"Time": "2024-05-01T12:00:00Z"}},  # no TokenSupplyUpdate
        new_pair_row(""),
        new_pair_row("MintB"),
    ]
    records = normalize_batch(Category.NEW_PAIR, {"Solana": {"TokenSupplyUpdates": rows}}, NOW)

    assert [r.mint_address for r in records] == ["MintA", "MintB"]


def test_normalize_batch_filters_final_stretch_rows():
    data = {"Solana": {"DEXPools": [pool_row("NoSuffix"), pool_row(PUMP_MINT_A)]}}
    records = normalize_batch(Category.FINAL_STRETCH, data, NOW)

    assert [r.mint_address for r in records] == [PUMP_MINT_A]


@pytest.mark.parametrize("payload", [None, {}, {"Solana": {}}, {"Solana": {"Instructions": "oops"}}])
def test_normalize_batch_without_rows(payload):
    assert normalize_batch(Category.MIGRATED, payload, NOW) == []
