# Standard library
import enum
import re


class ProtocolVersion(enum.Enum):
    CAS_1_0 = '1.0'
    CAS_2_0 = '2.0'
    CAS_3_0 = '3.0'
    SAML_1_1 = 'S1'


class ProxiedServiceType(enum.Enum):
    HTTP_GET = 'http_get'
    HTTP_POST = 'http_post'
    IMAP = 'imap'


SERVICE_OK = 0
SERVICE_PT_NO_SERVER_RESPONSE = 1
SERVICE_PT_BAD_SERVER_RESPONSE = 2
SERVICE_PT_FAILURE = 3
SERVICE_NOT_AVAILABLE = 4

# Tickets carried on the service URL.
SERVICE_TICKET_PATTERN = re.compile(r'^[SP]T-')
PGT_IOU_PATTERN = re.compile(r'PGTIOU-[.\-\w]+')
PGT_PATTERN = re.compile(r'[PT]GT-[.\-\w]+')

SESSION_INDEX_PATTERN = re.compile(
    r'<samlp:SessionIndex>(.*)</samlp:SessionIndex>', re.S)

CAS_NAMESPACE = 'http://www.yale.edu/tp/cas'
SAML_ASSERTION_NAMESPACE = 'urn:oasis:names:tc:SAML:1.0:assertion'

SAML_SOAP_ACTION = 'http://www.oasis-open.org/committees/security'
SAML_REQUEST_TEMPLATE = (
    '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">'
    '<SOAP-ENV:Header/>'
    '<SOAP-ENV:Body>'
    '<samlp:Request xmlns:samlp="urn:oasis:names:tc:SAML:1.0:protocol" '
    'MajorVersion="1" MinorVersion="1" RequestID="%(request_id)s" '
    'IssueInstant="%(issue_instant)s">'
    '<samlp:AssertionArtifact>%(ticket)s</samlp:AssertionArtifact>'
    '</samlp:Request>'
    '</SOAP-ENV:Body>'
    '</SOAP-ENV:Envelope>')

DEFAULT_SESSION_COOKIE = 'CASCLIENTSESSION'

REBROADCAST_LOGOUT = 'logout'
REBROADCAST_PGTIOU = 'pgtiou'
