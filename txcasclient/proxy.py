# Standard library
from urllib.parse import quote

# Application modules
from txcasclient.exceptions import (
    PT_BAD_SERVER_RESPONSE, PT_FAILURE, PT_NO_SERVER_RESPONSE,
    ProxyTicketError)
from txcasclient.validators import (
    buildQueryUrl, get_elements, get_text, parse_root)

# External modules
from twisted.internet import defer


def buildProxyURL(proxyURL, targetService, pgt):
    url = buildQueryUrl(proxyURL, 'targetService=' + quote(targetService, safe=''))
    return url + '&pgt=' + quote(pgt, safe='')

def parseProxyResponse(raw):
    """
    Extract the proxy ticket from a `proxy` response.

    @raise ProxyTicketError: The CAS server refused the request
        (PT_FAILURE) or the response could not be understood
        (PT_BAD_SERVER_RESPONSE).
    """
    root = parse_root(raw)
    if root is None or root.localName != 'serviceResponse':
        raise ProxyTicketError(
            "Invalid response from the CAS server (response=`%s')" % raw,
            code=PT_BAD_SERVER_RESPONSE)
    successes = get_elements(root, 'proxySuccess')
    if len(successes) > 0:
        tickets = get_elements(successes[0], 'proxyTicket')
        if len(tickets) > 0:
            return get_text(tickets[0]).strip()
    failures = get_elements(root, 'proxyFailure')
    if len(failures) > 0:
        failure = failures[0]
        raise ProxyTicketError(
            "PT retrieving failed (code=`%s', message=`%s')" % (
                failure.getAttribute('code'), get_text(failure).strip()),
            code=PT_FAILURE)
    raise ProxyTicketError(
        "Invalid response from the CAS server (response=`%s')" % raw,
        code=PT_BAD_SERVER_RESPONSE)

@defer.inlineCallbacks
def retrievePT(client, targetService, pgt):
    """
    Ask the CAS server for a proxy ticket for `targetService`.

    @param client: The CASClient that knows the proxy URL and how to
        create requests.
    @return: A deferred that fires with the proxy ticket.
    """
    url = buildProxyURL(client.getServerProxyURL(), targetService, pgt)
    client.debug("[DEBUG][CASClient] retrievePT(), url: %s" % url)
    request = client.createRequest()
    request.setUrl(url)
    sent = yield request.send()
    if not sent:
        raise ProxyTicketError(
            "could not retrieve PT (no response from the CAS server)",
            code=PT_NO_SERVER_RESPONSE)
    return parseProxyResponse(request.getResponseBody())
