
# Standard modules
import io
# Application modules
from txcasclient.exceptions import BadRequestError
from txcasclient.settings import (
    dump_settings, export_settings_to_dict, get_bool, has_options,
    load_defaults, parse_argstring)
from txcasclient.test.fakes import FakeRequest
from txcasclient.utils import get_header, get_single_param_or_default
# External modules
from twisted.trial.unittest import TestCase


class SettingsTest(TestCase):

    def setUp(self):
        self.scp = load_defaults({
            'CASClient': {
                'server_hostname': 'cas.example.net',
                'server_port': '443',
            },
            'CouchDB': {
                'user': 'couchuser',
                'passwd': 'secret',
            }})

    def test_export(self):
        settings = export_settings_to_dict(self.scp)
        self.assertEqual(settings['CASClient']['server_hostname'], 'cas.example.net')
        self.assertEqual(sorted(settings.keys()), ['CASClient', 'CouchDB'])

    def test_has_options(self):
        self.assertTrue(has_options(self.scp, {'CASClient': ['server_hostname']}))
        self.assertFalse(has_options(self.scp, {'CASClient': ['server_uri']}))
        self.assertFalse(has_options(self.scp, {'PLUGINS': []}))

    def test_dump_redacts_passwords(self):
        stm = io.StringIO()
        dump_settings(self.scp, stm)
        text = stm.getvalue()
        self.assertIn('CouchDB, user: couchuser', text)
        self.assertNotIn('secret', text)

    def test_get_bool(self):
        for value in ('1', 'yes', 'True', ' on ', True):
            self.assertTrue(get_bool(value))
        for value in ('0', 'no', 'false', 'off', '', False):
            self.assertFalse(get_bool(value))
        self.assertRaises(ValueError, get_bool, 'maybe')

    def test_parse_argstring(self):
        self.assertEqual(parse_argstring(''), {})
        self.assertEqual(
            parse_argstring('path=/var/pgts:debug=1'),
            {'path': '/var/pgts', 'debug': '1'})
        self.assertRaises(ValueError, parse_argstring, 'path')


class RequestHelpersTest(TestCase):

    def test_single_param(self):
        request = FakeRequest(args={'ticket': ['ST-1'], 'dup': ['a', 'b']})
        self.assertEqual(get_single_param_or_default(request, 'ticket'), 'ST-1')
        self.assertEqual(get_single_param_or_default(request, 'missing', 'x'), 'x')
        self.assertRaises(BadRequestError, get_single_param_or_default, request, 'dup')

    def test_header(self):
        request = FakeRequest(headers={'X-Forwarded-Host': 'www.example.org'})
        self.assertEqual(get_header(request, 'x-forwarded-host'), 'www.example.org')
        self.assertEqual(get_header(request, 'x-forwarded-port'), None)
