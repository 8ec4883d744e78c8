import pytest

from mailgenius.batching import batch_id, coerce_batch_size, split_batches
from mailgenius.errors import ValidationError


def test_split_batches_covers_every_recipient_in_order():
    batches = split_batches(list(range(250)), 100)
    assert [(b["batch_index"], b["start_record"], b["end_record"]) for b in batches] == [
        (0, 0, 100),
        (1, 100, 200),
        (2, 200, 250),
    ]


def test_split_batches_single_partial_batch():
    assert split_batches(["a", "b"], 100) == [{"batch_index": 0, "start_record": 0, "end_record": 2}]


def test_split_batches_exact_multiple():
    batches = split_batches(list(range(200)), 100)
    assert len(batches) == 2
    assert batches[-1]["end_record"] == 200


@pytest.mark.parametrize("size", [0, -5, "abc", None, 2.5, True, "1.5"])
def test_split_batches_rejects_invalid_size(size):
    with pytest.raises(ValidationError):
        split_batches(["a"], size)


def test_split_batches_rejects_empty_list():
    with pytest.raises(ValidationError):
        split_batches([], 10)


def test_batch_id_format():
    assert batch_id("job-1", 3) == "job-1:3"


@pytest.mark.parametrize("size, expected", [(3, 3), (3.0, 3), ("3", 3)])
def test_coerce_batch_size_accepts_whole_numbers(size, expected):
    assert coerce_batch_size(size) == expected
