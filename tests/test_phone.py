import pytest

from payment_service.phone import normalize_phone


def test_leading_zero_becomes_country_code():
    assert normalize_phone("0712345678") == "254712345678"
    assert len(normalize_phone("0712345678")) == 12


def test_prefixed_number_is_unchanged():
    assert normalize_phone("254712345678") == "254712345678"


@pytest.mark.parametrize("raw", ["0712345678", "254712345678", "+254712345678", "712345678", " 0712 345 678 "])
def test_normalization_is_idempotent(raw):
    once = normalize_phone(raw)
    assert once == "254712345678"
    assert normalize_phone(once) == once


def test_bare_subscriber_number_gets_prefix():
    assert normalize_phone("110123456") == "254110123456"


def test_empty_phone_is_rejected():
    with pytest.raises(ValueError):
        normalize_phone("   ")
