import pytest

from edgeorch.units import parse_cpu, parse_memory


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("512", 512),
        (4096, 4096),
        ("1k", 1000),
        ("512M", 512_000_000),
        ("1G", 1_000_000_000),
        ("256Mi", 256 * 1024**2),
        ("1024Ki", 1024 * 1024),
        ("1.5Gi", int(1.5 * 1024**3)),
        (None, None),
    ],
)
def test_parse_memory(raw, expected):
    assert parse_memory(raw) == expected


@pytest.mark.parametrize("raw", ["lots", "12Qi", "-1M"])
def test_parse_memory_rejects_garbage(raw):
    with pytest.raises(ValueError):
        parse_memory(raw)


@pytest.mark.parametrize(
    "raw,expected",
    [("0.5", 0.5), ("2", 2.0), ("500m", 0.5), ("250000000n", 0.25), ("1500u", 0.0015), (1, 1.0)],
)
def test_parse_cpu(raw, expected):
    assert parse_cpu(raw) == pytest.approx(expected)


def test_parse_cpu_none():
    assert parse_cpu(None) is None
