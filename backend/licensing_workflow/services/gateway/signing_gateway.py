"""
Signing Gateway Client

Wraps the external HSM (eMudhra) behind two calls:
- request_otp: JSON POST to HSM/GenOtp, sends an OTP to the key holder
- sign: SOAP signPdf call to the dsverifyWS endpoint, returns signed PDF bytes

The provider reports outcome inside the response body rather than through
HTTP status: `<txn>~SUCCESS~<base64 pdf>` or `<txn>~FAILURE~<reason>` inside
a <return> element. Provider failures are returned as unsuccessful results,
never raised; the orchestrator decides what they mean for the attempt.
"""
import base64
import binascii
import html
import json
import logging
import re
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from xml.sax.saxutils import escape

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...config import HsmSettings, load_hsm_settings

logger = logging.getLogger(__name__)

SIGNER_NAMESPACE = "http://ds.ws.emas/"
FAILURE_MARKER = "~FAILURE~"
SUCCESS_MARKER = "~SUCCESS~"
PDF_HEADER = b"%PDF"


@dataclass
class OtpResult:
    success: bool
    message: str
    raw_response: Optional[str] = None


@dataclass
class SignResult:
    success: bool
    signed_bytes: Optional[bytes] = None
    raw_response: Optional[str] = None
    message: str = ""


# =============================================================================
# CONTRACT
# =============================================================================

class SigningGateway(ABC):
    """HSM contract used by the signature orchestrator."""

    @abstractmethod
    def request_otp(self, transaction_id: str, key_label: str) -> OtpResult:
        raise NotImplementedError

    @abstractmethod
    def sign(
        self,
        transaction_id: str,
        key_label: str,
        document: bytes,
        otp: str,
        coordinates: str,
    ) -> SignResult:
        raise NotImplementedError


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def parse_otp_response(body: str) -> OtpResult:
    """Interpret the GenOtp JSON body. status == 1 means the OTP was sent."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return OtpResult(False, "OTP service returned an unreadable response", body)

    if not isinstance(data, dict):
        return OtpResult(False, "OTP service returned an unexpected response", body)

    if str(data.get("status")) == "1":
        return OtpResult(True, data.get("succMsg") or "OTP sent successfully", body)
    return OtpResult(False, data.get("errMsg") or "OTP generation failed", body)


def extract_failure_reason(body: str, marker: str) -> str:
    """Text between a failure marker and the end of the <return> element."""
    start = body.find(marker)
    if start < 0:
        return "Unknown signing error"
    start += len(marker)
    end = body.find("</return>", start)
    if end < 0:
        end = body.find("<", start)
    reason = body[start:end if end >= 0 else len(body)].strip()
    return html.unescape(reason) or "Unknown signing error"


def _return_text(body: str) -> Optional[str]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        root = None

    if root is not None:
        for element in root.iter():
            if element.tag.split("}")[-1] == "return":
                return element.text or ""
        return None

    match = re.search(r"<(?:\w+:)?return>(.*?)</(?:\w+:)?return>", body, re.DOTALL)
    return html.unescape(match.group(1)) if match else None


def _fault_text(body: str) -> Optional[str]:
    match = re.search(r"<faultstring>(.*?)</faultstring>", body, re.DOTALL)
    return html.unescape(match.group(1).strip()) if match else None


def parse_sign_response(body: str, transaction_id: str) -> SignResult:
    """Interpret a signPdf SOAP response."""
    if not body or not body.strip():
        return SignResult(False, raw_response=body, message="Empty response from signing service")

    specific_marker = f"{transaction_id}{FAILURE_MARKER}"
    if specific_marker in body:
        return SignResult(False, raw_response=body, message=extract_failure_reason(body, specific_marker))
    if FAILURE_MARKER in body:
        return SignResult(False, raw_response=body, message=extract_failure_reason(body, FAILURE_MARKER))

    fault = _fault_text(body)
    if fault:
        return SignResult(False, raw_response=body, message=f"Signing service fault: {fault}")

    returned = _return_text(body)
    if returned is None:
        return SignResult(False, raw_response=body, message="No <return> element in signing response")

    marked = SUCCESS_MARKER in returned
    payload = returned.split(SUCCESS_MARKER, 1)[1] if marked else returned

    try:
        signed = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError):
        return SignResult(False, raw_response=body, message="Signed document is not valid base64")

    if not signed:
        return SignResult(False, raw_response=body, message="Signing service returned an empty document")

    # Without the success marker only an actual PDF counts as a signed document
    if not marked and not signed.startswith(PDF_HEADER):
        return SignResult(False, raw_response=body, message="Signing service returned an unrecognised response")

    return SignResult(True, signed_bytes=signed, raw_response=body, message="Document signed successfully")


def build_sign_envelope(
    transaction_id: str,
    key_label: str,
    document: bytes,
    otp: str,
    coordinates: str,
    otp_type: str = "single",
    page_location: str = "last",
) -> str:
    """SOAP body for ds.ws.emas signPdf."""
    encoded = base64.b64encode(document).decode("ascii")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
        f'xmlns:ds="{SIGNER_NAMESPACE}">'
        "<soapenv:Header/>"
        "<soapenv:Body>"
        "<ds:signPdf>"
        f"<arg0>{escape(transaction_id)}</arg0>"
        f"<arg1>{escape(key_label)}</arg1>"
        f"<arg2>{encoded}</arg2>"
        "<arg3></arg3>"
        f"<arg4>{escape(coordinates)}</arg4>"
        f"<arg5>{escape(page_location)}</arg5>"
        "<arg6></arg6>"
        "<arg7></arg7>"
        "<arg8>true</arg8>"
        f"<arg9>{escape(otp)}</arg9>"
        f"<arg10>{escape(otp_type)}</arg10>"
        "</ds:signPdf>"
        "</soapenv:Body>"
        "</soapenv:Envelope>"
    )


# =============================================================================
# HTTP CLIENT
# =============================================================================

class EmudhraSigningGateway(SigningGateway):
    """
    HTTP client for the eMudhra HSM.

    OTP requests are retried on connection errors and timeouts only. Sign
    calls are never retried here: a second sign with the same OTP would be
    rejected, so retrying is left to the caller with a fresh OTP.
    """

    def __init__(self, settings: Optional[HsmSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or load_hsm_settings()
        self.session = session or requests.Session()

    @property
    def otp_url(self) -> str:
        return f"{self.settings.otp_service_url.rstrip('/')}/HSM/GenOtp"

    @property
    def sign_url(self) -> str:
        return f"{self.settings.signer_service_url.rstrip('/')}/services/dsverifyWS"

    def _otp_retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(max(1, self.settings.otp_max_attempts)),
            wait=wait_exponential(multiplier=self.settings.otp_retry_delay_seconds, max=30),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def request_otp(self, transaction_id: str, key_label: str) -> OtpResult:
        if not self.settings.enabled:
            return OtpResult(False, "HSM signing is disabled")

        payload = {
            "otptype": self.settings.otp_type,
            "ptno": "1",
            "txn": transaction_id,
            "klabel": key_label,
        }
        logger.info(f"Requesting OTP for transaction {transaction_id}, key {key_label}")

        try:
            response = self._otp_retrying()(
                self.session.post,
                self.otp_url,
                json=payload,
                headers={"Content-Type": "application/json", **self.settings.extra_headers},
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning(f"OTP service unreachable for transaction {transaction_id}: {e}")
            return OtpResult(False, f"OTP service unreachable: {e}")

        if self.settings.detailed_logging:
            logger.debug(f"OTP response ({response.status_code}): {response.text}")

        if response.status_code >= 400:
            return OtpResult(False, f"OTP service returned HTTP {response.status_code}", response.text)

        result = parse_otp_response(response.text)
        if not result.success:
            logger.warning(f"OTP generation failed for transaction {transaction_id}: {result.message}")
        return result

    def sign(
        self,
        transaction_id: str,
        key_label: str,
        document: bytes,
        otp: str,
        coordinates: str,
    ) -> SignResult:
        if not self.settings.enabled:
            return SignResult(False, message="HSM signing is disabled")

        envelope = build_sign_envelope(
            transaction_id,
            key_label,
            document,
            otp,
            coordinates,
            otp_type=self.settings.otp_type,
            page_location=self.settings.page_location,
        )
        logger.info(
            f"Signing transaction {transaction_id} with key {key_label} "
            f"({len(document)} bytes, coordinates {coordinates})"
        )

        try:
            response = self.session.post(
                self.sign_url,
                data=envelope.encode("utf-8"),
                headers={"Content-Type": "text/xml; charset=utf-8", "SOAPAction": "", **self.settings.extra_headers},
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning(f"Signing service unreachable for transaction {transaction_id}: {e}")
            return SignResult(False, message=f"Signing service unreachable: {e}")

        if self.settings.detailed_logging:
            logger.debug(f"Sign response ({response.status_code}): {response.text[:2000]}")

        result = parse_sign_response(response.text, transaction_id)
        if not result.success and response.status_code >= 400 and not response.text:
            result.message = f"Signing service returned HTTP {response.status_code}"
        return result

    def check_health(self) -> bool:
        """True when the signer endpoint answers at all."""
        try:
            response = self.session.get(self.settings.signer_service_url, timeout=10)
        except requests.RequestException as e:
            logger.warning(f"HSM health check failed: {e}")
            return False
        return response.status_code < 500
