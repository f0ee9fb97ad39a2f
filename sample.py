#! /usr/bin/env python

import argparse
from html import escape as escape_html
from textwrap import dedent
import sys
from txcasclient.client import CASClient
from txcasclient.interface import IPGTStorageFactory
from txcasclient.proxy_chain import AnyProxyChain
import txcasclient.settings
from txcasclient.utils import format_plugin_help_list
from klein import Klein
from twisted.internet import defer
from twisted.plugin import getPlugins
from twisted.python import log


class MyApp(object):
    app = Klein()

    def __init__(self, color, cas_client, proxied_service=None):
        self.color = color
        self.cas_client = cas_client
        self.proxied_service = proxied_service

    def page(self, title, body):
        return dedent("""\
            <html>
                <head><title>%(title)s</title></head>
                <body style="background: %(color)s">
                    <h1>%(title)s</h1>
                    %(body)s
                    <p><a href="/">Back</a></p>
                </body>
            </html>
            """) % {
                'title': escape_html(title),
                'color': self.color,
                'body': body}

    @app.route('/', methods=['POST'])
    @defer.inlineCallbacks
    def index_POST(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.handleLogoutRequests()
        return outcome.apply(request) or b''

    @app.route('/', methods=['GET'])
    @defer.inlineCallbacks
    def index(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.checkAuthentication()
        if not outcome.isContinue:
            return outcome.apply(request)
        if outcome.authenticated:
            user = auth.getUser()
        else:
            user = '(nobody)'
        proxy_markup = ''
        if self.proxied_service is not None:
            proxy_markup = '<li><a href="/proxy-a-service">Proxy another service.</a></li>'
        return self.page("Welcome to the app", dedent("""\
            <p>You are logged in as: %(user)s</p>
            <ul>
                <li><a href="/landing">Click here to login</a>.</li>
                <li><a href="/renew">Click here to login, forcing the login page</a>.</li>
                %(proxy_markup)s
                <li><a href="/logout">Click here to logout of your SSO session</a>.</li>
            </ul>
            """) % {
                'user': escape_html(user),
                'proxy_markup': proxy_markup})

    @app.route('/landing', methods=['GET'])
    @defer.inlineCallbacks
    def landing_GET(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.forceAuthentication()
        if not outcome.isContinue:
            return outcome.apply(request)
        attribs = auth.getAttributes()
        rows = '\n'.join(
            '<li>%s: %s</li>' % (escape_html(k), escape_html(str(v)))
            for k, v in sorted(attribs.items()))
        return self.page("Landing", "<p>User: %s</p><ul>%s</ul>" % (
            escape_html(auth.getUser()), rows))

    @app.route('/renew', methods=['GET'])
    @defer.inlineCallbacks
    def renew_GET(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.renewAuthentication()
        if not outcome.isContinue:
            return outcome.apply(request)
        return self.page("Renewed", "<p>User: %s</p>" % escape_html(auth.getUser()))

    @app.route('/proxycb', methods=['GET', 'POST'])
    @defer.inlineCallbacks
    def proxycb(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.isAuthenticated()
        return outcome.apply(request) or b''

    @app.route('/proxy-a-service', methods=['GET'])
    @defer.inlineCallbacks
    def proxy_a_service_GET(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.forceAuthentication()
        if not outcome.isContinue:
            return outcome.apply(request)
        ok, output = yield auth.serviceWeb(self.proxied_service)
        if ok:
            title = "Proxy a Service"
        else:
            title = "Proxy a Service - Error"
        return self.page(title, "<p>%s</p><pre>%s</pre>" % (
            escape_html(self.proxied_service), escape_html(output)))

    @app.route('/logout', methods=['GET'])
    @defer.inlineCallbacks
    def logout_GET(self, request):
        auth = self.cas_client.authenticator(request)
        outcome = yield auth.logout(service=str(request.URLPath().sibling(b'')))
        return outcome.apply(request)


def main(args):
    scp = txcasclient.settings.load_settings('casclient', syspath='/etc/casclient', defaults={
            'CASClient': {
                'version': '2.0',
                'server_hostname': 'cas.example.net',
                'server_port': '443',
                'server_uri': '/cas',}})
    if args.dump_settings:
        txcasclient.settings.dump_settings(scp)
    if args.proxied_service is not None and not scp.has_option('CASClient', 'proxy'):
        scp.set('CASClient', 'proxy', '1')
    cas_client = CASClient.fromSettings(scp)
    if cas_client.proxy:
        cas_client.addAllowedProxyChain(AnyProxyChain())
    app = MyApp(args.color, cas_client, proxied_service=args.proxied_service)
    from twisted.web.server import Site
    from twisted.internet import reactor
    log.startLogging(sys.stdout)
    reactor.listenTCP(args.port, Site(app.app.resource()))
    reactor.run()

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--port",
        action='store',
        type=int,
        default=9801,
        help='The port the protected application listens on.')
    parser.add_argument(
        "--color",
        action='store',
        default='#acf',
        help='Background color of the application pages.')
    parser.add_argument(
        "--proxied-service",
        action='store',
        help='Act as a CAS proxy for the service at this URL.')
    parser.add_argument(
        "--dump-settings",
        action='store_true',
        help='Print the loaded settings (passwords masked).')
    parser.add_argument(
        "--help-pgt-storage",
        action='store_true',
        help='List the available PGT storage plugins and exit.')
    args = parser.parse_args()
    if args.help_pgt_storage:
        format_plugin_help_list(list(getPlugins(IPGTStorageFactory)), sys.stdout)
        sys.exit(0)
    main(args)
