# tests/test_x402_challenge.py
"""
Unit tests for x402 challenge parsing, authorization and signing.
"""
import base64
import json
import time
import pytest

from eth_account import Account
from eth_account.messages import encode_typed_data

from app.core.errors import PaymentChallengeError
from app.x402.challenge import (
    NONCE_PATTERN,
    TRANSFER_WITH_AUTHORIZATION_TYPES,
    PaymentAuthorization,
    build_payment_authorization,
    create_nonce,
    encode_payment_header,
    extract_payment_details,
    parse_payment_challenge,
    select_payment_requirements,
    sign_payment_authorization,
)
from conftest import PAY_TO, USDC_BASE, build_challenge

PAYER = "0x90F8bf6A479f320ead074411a4B0e7944Ea8c9C1"
SERVER_NONCE = "0x" + "ab" * 32


def settlement_header(success=True, transaction="0x" + "cd" * 32):
    payload = {"success": success, "transaction": transaction, "network": "base", "payer": PAYER}
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def requirements_for(**kwargs):
    challenge = parse_payment_challenge(build_challenge(**kwargs))
    return challenge.accepts[0]


class TestCreateNonce:
    """Test nonce generation."""

    def test_nonce_format(self):
        """Nonces are 32 bytes of 0x-prefixed hex."""
        assert NONCE_PATTERN.match(create_nonce())

    def test_nonces_unique(self):
        """Consecutive nonces differ."""
        assert len({create_nonce() for _ in range(100)}) == 100


class TestParsePaymentChallenge:
    """Test 402 body parsing."""

    def test_parse_dict(self):
        """A well-formed challenge parses into requirements."""
        challenge = parse_payment_challenge(build_challenge())

        assert challenge.x402_version == 1
        assert len(challenge.accepts) == 1
        requirement = challenge.accepts[0]
        assert requirement.scheme == "exact"
        assert requirement.network == "base"
        assert requirement.max_amount_required == "1000"
        assert requirement.pay_to == PAY_TO

    def test_parse_json_text(self):
        """A JSON string body is accepted."""
        challenge = parse_payment_challenge(json.dumps(build_challenge()))
        assert challenge.accepts[0].asset == USDC_BASE

    def test_missing_error_field_allowed(self):
        """Challenges without an error message still parse."""
        body = build_challenge()
        del body["error"]
        assert parse_payment_challenge(body).error == ""

    def test_invalid_json_rejected(self):
        """Non-JSON text is a malformed challenge."""
        with pytest.raises(PaymentChallengeError, match="Malformed payment challenge"):
            parse_payment_challenge("<html>Payment Required</html>")

    def test_non_object_rejected(self):
        """JSON that is not an object is a malformed challenge."""
        with pytest.raises(PaymentChallengeError, match="Malformed payment challenge"):
            parse_payment_challenge([1, 2, 3])

    def test_missing_fields_rejected(self):
        """Requirements without required fields are rejected."""
        body = build_challenge()
        del body["accepts"][0]["payTo"]

        with pytest.raises(PaymentChallengeError, match="Malformed payment challenge"):
            parse_payment_challenge(body)

    def test_empty_accepts_rejected(self):
        """A challenge that offers nothing cannot be paid."""
        body = build_challenge()
        body["accepts"] = []

        with pytest.raises(PaymentChallengeError, match="no accepted payment requirements"):
            parse_payment_challenge(body)


class TestSelectPaymentRequirements:
    """Test requirement selection."""

    def test_prefers_matching_network(self):
        """A requirement on the configured network wins."""
        body = build_challenge(network="base-sepolia")
        body["accepts"].append(build_challenge(network="base")["accepts"][0])
        challenge = parse_payment_challenge(body)

        selected = select_payment_requirements(challenge, "base")
        assert selected.network == "base"

    def test_falls_back_to_scheme_match(self):
        """Without a network match, any exact requirement is used."""
        challenge = parse_payment_challenge(build_challenge(network="base-sepolia"))

        selected = select_payment_requirements(challenge, "base")
        assert selected.network == "base-sepolia"

    def test_unsupported_scheme_rejected(self):
        """Only the exact scheme can be paid."""
        with pytest.raises(PaymentChallengeError):
            challenge = parse_payment_challenge(build_challenge(scheme="upto"))
            select_payment_requirements(challenge, "base")


class TestBuildPaymentAuthorization:
    """Test authorization construction."""

    def test_binds_requirements(self):
        """Authorization carries payer, recipient, amount and asset."""
        requirements = requirements_for(amount="2500")
        authorization = build_payment_authorization(PAYER, requirements)

        assert authorization.from_address == PAYER
        assert authorization.pay_to == PAY_TO
        assert authorization.amount == "2500"
        assert authorization.asset == USDC_BASE
        assert authorization.network == "base"
        assert authorization.scheme == "exact"

    def test_validity_window(self):
        """validAfter is already in force and validBefore follows maxTimeoutSeconds."""
        requirements = requirements_for(maxTimeoutSeconds=120)
        before = int(time.time())
        authorization = build_payment_authorization(PAYER, requirements)
        after = int(time.time())

        assert authorization.valid_after < before
        assert before + 120 <= authorization.valid_before <= after + 121

    def test_fresh_nonce_each_time(self):
        """Two authorizations for the same requirement use different nonces."""
        requirements = requirements_for()
        first = build_payment_authorization(PAYER, requirements)
        second = build_payment_authorization(PAYER, requirements)

        assert first.nonce != second.nonce
        assert NONCE_PATTERN.match(first.nonce)

    def test_server_nonce_used(self):
        """A nonce dictated in extra is used verbatim."""
        requirements = requirements_for(extra={"name": "USD Coin", "version": "2", "nonce": SERVER_NONCE})
        authorization = build_payment_authorization(PAYER, requirements)

        assert authorization.nonce == SERVER_NONCE

    def test_explicit_nonce_used(self):
        """An explicit nonce argument is used when the server sets none."""
        nonce = "0x" + "12" * 32
        authorization = build_payment_authorization(PAYER, requirements_for(), nonce=nonce)
        assert authorization.nonce == nonce

    def test_bad_server_nonce_rejected(self):
        """A malformed server nonce is rejected."""
        requirements = requirements_for(extra={"nonce": "0x1234"})

        with pytest.raises(PaymentChallengeError, match="nonce"):
            build_payment_authorization(PAYER, requirements)

    def test_amount_above_maximum_rejected(self):
        """Requirements above the configured maximum are refused."""
        requirements = requirements_for(amount="500000")

        with pytest.raises(PaymentChallengeError, match="exceeds allowed maximum"):
            build_payment_authorization(PAYER, requirements, max_amount=100_000)

    def test_amount_at_maximum_allowed(self):
        """An amount equal to the maximum is allowed."""
        requirements = requirements_for(amount="100000")
        authorization = build_payment_authorization(PAYER, requirements, max_amount=100_000)
        assert authorization.amount == "100000"


class TestSignPaymentAuthorization:
    """Test EIP-712 signing."""

    def test_signature_recovers_payer(self):
        """The signature recovers to the signing wallet."""
        account = Account.create()
        requirements = requirements_for()
        authorization = build_payment_authorization(account.address, requirements)

        signature = sign_payment_authorization(account, requirements, authorization)

        domain = {
            "name": "USD Coin",
            "version": "2",
            "chainId": 8453,
            "verifyingContract": USDC_BASE,
        }
        message = {
            "from": account.address,
            "to": PAY_TO,
            "value": 1000,
            "validAfter": authorization.valid_after,
            "validBefore": authorization.valid_before,
            "nonce": bytes.fromhex(authorization.nonce[2:]),
        }
        signable = encode_typed_data(domain, TRANSFER_WITH_AUTHORIZATION_TYPES, message)

        assert signature.startswith("0x")
        assert Account.recover_message(signable, signature=signature) == account.address

    def test_signature_differs_per_nonce(self):
        """Each authorization gets its own signature."""
        account = Account.create()
        requirements = requirements_for()

        first = sign_payment_authorization(account, requirements, build_payment_authorization(account.address, requirements))
        second = sign_payment_authorization(account, requirements, build_payment_authorization(account.address, requirements))

        assert first != second


class TestEncodePaymentHeader:
    """Test X-PAYMENT header encoding."""

    def test_header_payload(self):
        """The header is base64 JSON carrying the signed authorization."""
        authorization = PaymentAuthorization(
            scheme="exact",
            network="base",
            asset=USDC_BASE,
            amount="1000",
            pay_to=PAY_TO,
            from_address=PAYER,
            nonce=SERVER_NONCE,
            valid_after=100,
            valid_before=200,
        )

        header = encode_payment_header(authorization, "0xsig")
        payload = json.loads(base64.b64decode(header))

        assert payload["x402Version"] == 1
        assert payload["scheme"] == "exact"
        assert payload["network"] == "base"
        assert payload["payload"]["signature"] == "0xsig"
        assert payload["payload"]["authorization"] == {
            "from": PAYER,
            "to": PAY_TO,
            "value": "1000",
            "validAfter": "100",
            "validBefore": "200",
            "nonce": SERVER_NONCE,
        }


class TestExtractPaymentDetails:
    """Test settlement metadata extraction."""

    @pytest.fixture
    def authorization(self):
        return build_payment_authorization(PAYER, requirements_for(amount="1000"))

    def test_explicit_headers(self):
        """X-PAYMENT-TX/-AMOUNT/-TO headers are used directly."""
        headers = {"X-PAYMENT-TX": "0xabc", "X-PAYMENT-AMOUNT": "1000", "X-PAYMENT-TO": PAY_TO}

        details = extract_payment_details(headers)

        assert details.tx_hash == "0xabc"
        assert details.amount == "1000"
        assert details.to == PAY_TO
        assert details.to_dict() == {"txHash": "0xabc", "amount": "1000", "to": PAY_TO}

    def test_tx_header_completed_from_authorization(self, authorization):
        """Missing amount and recipient come from the authorization."""
        details = extract_payment_details({"X-PAYMENT-TX": "0xabc"}, authorization)

        assert details.amount == "1000"
        assert details.to == PAY_TO

    def test_tx_header_without_amount_is_none(self):
        """A transaction with no way to know the amount is not reported."""
        assert extract_payment_details({"X-PAYMENT-TX": "0xabc"}) is None

    def test_settlement_response_header(self, authorization):
        """A successful X-PAYMENT-RESPONSE supplies the transaction hash."""
        headers = {"X-PAYMENT-RESPONSE": settlement_header()}

        details = extract_payment_details(headers, authorization)

        assert details.tx_hash == "0x" + "cd" * 32
        assert details.amount == "1000"
        assert details.to == PAY_TO

    def test_failed_settlement_ignored(self, authorization):
        """An unsuccessful settlement is not reported as a payment."""
        headers = {"X-PAYMENT-RESPONSE": settlement_header(success=False)}
        assert extract_payment_details(headers, authorization) is None

    def test_garbage_settlement_header_ignored(self, authorization):
        """An undecodable settlement header is ignored."""
        assert extract_payment_details({"X-PAYMENT-RESPONSE": "%%%"}, authorization) is None

    def test_no_headers(self, authorization):
        """No settlement headers means no payment details."""
        assert extract_payment_details({}, authorization) is None
