from .signing_gateway import (
    EmudhraSigningGateway, OtpResult, SignResult, SigningGateway,
    parse_otp_response, parse_sign_response,
)

__all__ = [
    'EmudhraSigningGateway',
    'OtpResult',
    'SignResult',
    'SigningGateway',
    'parse_otp_response',
    'parse_sign_response',
]
