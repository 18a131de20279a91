import pytest

from utils.otp_service import (
    OTP_EXPIRY_SECONDS,
    RATE_LIMIT_MAX,
    RATE_LIMIT_WINDOW_SECONDS,
    OtpError,
    OtpStore,
)
from utils.whatsapp import DeliveryError, DeliveryFailure

PHONE = "+963912345678"


def test_generated_code_is_six_digits(store):
    for _ in range(200):
        code = store.generate_code()
        assert len(code) == 6
        assert 100000 <= int(code) <= 999999


def test_request_code_sends_message_with_code(store, messenger):
    result = store.request_code(PHONE)

    assert result.ok is True
    assert result.error is None
    phone, text = messenger.sent[0]
    assert phone == PHONE
    assert messenger.last_code() in text
    assert "2 minutes" in text


def test_phone_is_trimmed(store, messenger):
    store.request_code(f"  {PHONE} ")
    assert store.get(PHONE) is not None
    assert store.verify_code(f"{PHONE}\n", messenger.last_code()).ok


def test_empty_phone_is_missing_input(store, messenger):
    result = store.request_code("   ")
    assert result.error is OtpError.MISSING_INPUT
    assert messenger.sent == []
    assert store.attempts_in_window("   ") == 0


def test_fourth_request_in_window_is_rate_limited(store, messenger, clock):
    for _ in range(RATE_LIMIT_MAX):
        assert store.request_code(PHONE).ok
        clock.advance(60)
    code_before = store.get(PHONE).code

    result = store.request_code(PHONE)

    assert result.ok is False
    assert result.error is OtpError.RATE_LIMITED
    assert len(messenger.sent) == RATE_LIMIT_MAX
    assert store.get(PHONE).code == code_before
    assert store.attempts_in_window(PHONE) == RATE_LIMIT_MAX


def test_rate_limit_window_slides(store, clock):
    for _ in range(RATE_LIMIT_MAX):
        assert store.request_code(PHONE).ok
    assert store.request_code(PHONE).error is OtpError.RATE_LIMITED

    clock.advance(RATE_LIMIT_WINDOW_SECONDS)

    assert store.request_code(PHONE).ok


def test_rate_limit_is_per_phone(store):
    for _ in range(RATE_LIMIT_MAX):
        store.request_code(PHONE)
    assert store.request_code("+963998877665").ok


def test_new_send_overwrites_previous_code(store, messenger):
    store.request_code(PHONE)
    first = messenger.last_code()
    store.request_code(PHONE)
    second = messenger.last_code()

    assert store.get(PHONE).code == second
    if first != second:
        assert store.verify_code(PHONE, first).error is OtpError.MISMATCH
    assert store.verify_code(PHONE, second).ok


def test_code_is_accepted_exactly_once(store, messenger):
    store.request_code(PHONE)
    code = messenger.last_code()

    assert store.verify_code(PHONE, code).ok
    second = store.verify_code(PHONE, code)
    assert second.error is OtpError.NOT_FOUND


def test_mismatch_keeps_record(store, messenger):
    store.request_code(PHONE)
    code = messenger.last_code()
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(5):
        assert store.verify_code(PHONE, wrong).error is OtpError.MISMATCH
    assert store.verify_code(PHONE, f" {code} ").ok


def test_expired_code_is_deleted(store, messenger, clock):
    store.request_code(PHONE)
    code = messenger.last_code()

    clock.advance(OTP_EXPIRY_SECONDS + 0.001)

    assert store.verify_code(PHONE, code).error is OtpError.EXPIRED
    assert store.verify_code(PHONE, code).error is OtpError.NOT_FOUND


def test_code_valid_right_at_expiry(store, messenger, clock):
    store.request_code(PHONE)
    clock.advance(OTP_EXPIRY_SECONDS)
    assert store.verify_code(PHONE, messenger.last_code()).ok


def test_verify_without_send_is_not_found(store):
    assert store.verify_code(PHONE, "123456").error is OtpError.NOT_FOUND


@pytest.mark.parametrize(
    "reason, expected",
    [
        (DeliveryFailure.DISCONNECTED, OtpError.DELIVERY_DISCONNECTED),
        (DeliveryFailure.INVALID_NUMBER, OtpError.DELIVERY_INVALID_NUMBER),
        (DeliveryFailure.OTHER, OtpError.DELIVERY_FAILED),
    ],
)
def test_delivery_failure_is_classified_and_rolled_back(store, messenger, reason, expected):
    messenger.fail_with = DeliveryError(reason, "bridge said no")

    result = store.request_code(PHONE)

    assert result.error is expected
    assert store.get(PHONE) is None
    assert store.verify_code(PHONE, "123456").error is OtpError.NOT_FOUND
    assert store.attempts_in_window(PHONE) == 1


def test_unexpected_delivery_exception_is_generic_failure(store, messenger):
    messenger.fail_with = RuntimeError("socket exploded")

    result = store.request_code(PHONE)

    assert result.error is OtpError.DELIVERY_FAILED
    assert store.get(PHONE) is None


def test_failed_deliveries_consume_rate_limit(store, messenger):
    messenger.fail_with = DeliveryError(DeliveryFailure.DISCONNECTED)
    for _ in range(RATE_LIMIT_MAX):
        store.request_code(PHONE)

    messenger.fail_with = None
    assert store.request_code(PHONE).error is OtpError.RATE_LIMITED


def test_missing_messenger_counts_as_disconnected(clock):
    store = OtpStore(None, clock=clock)

    result = store.request_code(PHONE)

    assert result.error is OtpError.DELIVERY_DISCONNECTED
    assert store.get(PHONE) is None
    assert store.attempts_in_window(PHONE) == 1


def test_result_messages_are_human_readable(store):
    result = store.verify_code(PHONE, "123456")
    assert "No code was sent" in result.message


class _SequenceRng:
    def __init__(self, *values):
        self.values = list(values)

    def randint(self, low, high):
        return self.values.pop(0)


class _ResendingMessenger:
    """Fails the first delivery after a second send has replaced the code."""

    def __init__(self):
        self.store = None
        self.sent = []

    def send_message(self, phone, text):
        if not self.sent:
            self.sent.append(text)
            assert self.store.request_code(phone).ok
            raise DeliveryError(DeliveryFailure.DISCONNECTED, "dropped")
        self.sent.append(text)


def test_failed_delivery_keeps_newer_record(clock):
    messenger = _ResendingMessenger()
    store = OtpStore(messenger, clock=clock, rng=_SequenceRng(111111, 222222))
    messenger.store = store

    result = store.request_code(PHONE)

    assert result.error is OtpError.DELIVERY_DISCONNECTED
    assert store.get(PHONE).code == "222222"
    assert store.verify_code(PHONE, "111111").error is OtpError.MISMATCH
    assert store.verify_code(PHONE, "222222").ok
    assert store.attempts_in_window(PHONE) == 2


def test_non_ascii_code_is_mismatch(store, messenger):
    store.request_code(PHONE)
    assert store.verify_code(PHONE, "١٢٣٤٥٦").error is OtpError.MISMATCH
    assert store.verify_code(PHONE, messenger.last_code()).ok
