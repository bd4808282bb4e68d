from relaybridge.core.dedup import DEDUP_FILENAME, ProcessedUpdates


def test_mark_and_check(tmp_path) -> None:
    ledger = ProcessedUpdates(str(tmp_path))
    assert ledger.is_processed(10) is False
    ledger.mark(10)
    assert ledger.is_processed(10) is True
    assert (tmp_path / DEDUP_FILENAME).is_file()


def test_persists_across_instances(tmp_path) -> None:
    ProcessedUpdates(str(tmp_path)).mark(7)
    assert ProcessedUpdates(str(tmp_path)).is_processed(7) is True


def test_keeps_only_most_recent(tmp_path) -> None:
    ledger = ProcessedUpdates(str(tmp_path), max_stored=3)
    for update_id in range(1, 6):
        ledger.mark(update_id)
    assert ledger.is_processed(1) is False
    assert ledger.is_processed(2) is False
    assert all(ledger.is_processed(i) for i in (3, 4, 5))


def test_corrupt_ledger_starts_empty(tmp_path) -> None:
    (tmp_path / DEDUP_FILENAME).write_text("{{{", encoding="utf-8")
    ledger = ProcessedUpdates(str(tmp_path))
    assert ledger.is_processed(1) is False
    ledger.mark(1)
    assert ledger.is_processed(1) is True
