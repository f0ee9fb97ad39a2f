
#=======================================================================
# IPolicyForHTTPS implementations that pin the CAS server to a given
# CA bundle, or skip verification entirely.
# Use these as the `contextFactory` for `twisted.web.client.Agent`.
#=======================================================================

# External modules
from OpenSSL import crypto
import pem
from twisted.internet import ssl
from twisted.web.iweb import IPolicyForHTTPS
from zope.interface import implementer


@implementer(IPolicyForHTTPS)
class PinnedCAPolicyForHTTPS(object):
    """
    SSL connection creator for web clients that only trusts the
    supplied CA certificates.
    """
    def __init__(self, trustRoots, validate_cn=True):
        self._trustRoots = list(trustRoots)
        self.validate_cn = validate_cn

    def creatorForNetloc(self, hostname, port):
        trustRoot = ssl.trustRootFromCertificates(self._trustRoots)
        if self.validate_cn:
            if isinstance(hostname, bytes):
                hostname = hostname.decode("ascii")
            return ssl.optionsForClientTLS(hostname, trustRoot=trustRoot)
        # Chain is verified, the certificate's name is not.
        return ssl.CertificateOptions(trustRoot=trustRoot)


@implementer(IPolicyForHTTPS)
class NonVerifyingPolicyForHTTPS(object):
    """
    Connection creator does *not* verify SSL cert.
    """
    def creatorForNetloc(self, hostname, port):
        return ssl.CertificateOptions(verify=False)


def pem_cert_to_x509(pem_cert):
    return crypto.load_certificate(crypto.FILETYPE_PEM, pem_cert.as_bytes())

def load_trust_roots(*pem_files):
    """
    Parse every certificate in `pem_files` into a list of
    `twisted.internet.ssl.Certificate`.
    """
    authorities = []
    for pem_file in pem_files:
        for cert in pem.parse_file(pem_file):
            if isinstance(cert, pem.Certificate):
                authorities.append(ssl.Certificate(pem_cert_to_x509(cert)))
    return authorities

def createPinnedPolicyFromPEMs(*pem_files, **kwds):
    validate_cn = kwds.get('validate_cn', True)
    return PinnedCAPolicyForHTTPS(load_trust_roots(*pem_files), validate_cn=validate_cn)
