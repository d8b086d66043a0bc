"""
Unit tests for the email OTP challenge.
"""

from datetime import timedelta

import pytest

from storefront.otp import OTP_MAX, OTP_MIN, OtpManager


class TestIssue:

    def test_random_codes_are_six_digits(self):
        otp = OtpManager()
        for _ in range(200):
            code = otp.issue().code
            assert OTP_MIN <= code <= OTP_MAX
            assert len(str(code)) == 6

    def test_expiry_is_issue_time_plus_15_minutes(self, clock):
        challenge = OtpManager(clock=clock).issue()
        assert challenge.expires_at == clock.now + timedelta(minutes=15)

    def test_explicit_issue_time(self, clock):
        at = clock.now - timedelta(hours=1)
        assert OtpManager(clock=clock).issue(at).expires_at == at + timedelta(minutes=15)

    def test_out_of_range_generator_refused(self):
        with pytest.raises(ValueError):
            OtpManager(generator=lambda: 99999).issue()

    def test_email_text(self):
        otp = OtpManager(generator=lambda: 482913)
        subject, body = otp.email(otp.issue())
        assert subject == "Your OTP Code"
        assert body == "Your OTP code is 482913. It is valid for 15 minutes."


class TestCheck:
    """Exact numeric match and not past expiry."""

    @pytest.fixture
    def otp(self, clock):
        return OtpManager(clock=clock, generator=lambda: 482913)

    def test_matching_code(self, otp):
        c = otp.issue()
        assert otp.check(c.code, c.expires_at, 482913)
        assert otp.check(c.code, c.expires_at, "482913")
        assert otp.check(c.code, c.expires_at, " 482913 ")
        assert otp.check(c.code, c.expires_at, "0482913")

    def test_wrong_code(self, otp):
        c = otp.issue()
        assert not otp.check(c.code, c.expires_at, 482914)
        assert not otp.check(c.code, c.expires_at, "48291")
        assert not otp.check(c.code, c.expires_at, "482913a")
        assert not otp.check(c.code, c.expires_at, "9" * 5000)
        assert not otp.check(c.code, c.expires_at, "1" + "0" * 4999)
        assert not otp.check(c.code, c.expires_at, 10 ** 6000)
        assert not otp.check(c.code, c.expires_at, True)

    def test_non_ascii_digits_rejected(self, otp):
        c = otp.issue()
        assert not otp.check(c.code, c.expires_at, "４８２９１３")

    def test_valid_at_exact_expiry(self, otp, clock):
        c = otp.issue()
        clock.advance(minutes=15)
        assert otp.check(c.code, c.expires_at, 482913)

    def test_expired_one_second_later(self, otp, clock):
        c = otp.issue()
        clock.advance(minutes=15, seconds=1)
        assert not otp.check(c.code, c.expires_at, 482913)

    def test_no_stored_code(self, otp, clock):
        assert not otp.check(None, clock.now + timedelta(minutes=5), 482913)
        assert not otp.check(482913, None, 482913)

    def test_unlimited_retries(self, otp):
        c = otp.issue()
        for wrong in range(100000, 100010):
            assert not otp.check(c.code, c.expires_at, wrong)
        assert otp.check(c.code, c.expires_at, 482913)
