from types import SimpleNamespace
import json
import logging
import sys

from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase, override_settings

from core.logging_formatters import StructuredJSONFormatter
from core.logging_utils import AppLogger, get_secrets_logger
from core.middleware import (
    LoggingMiddleware,
    UserIdFilter,
    _request_data,
    get_client_ip,
    get_request_context,
)


class AppLoggerTests(SimpleTestCase):
    def setUp(self):
        self.logger = AppLogger('core.tests')
        self.user = SimpleNamespace(email='user@example.com', id=3)

    def test_info_logs_formatted_message_with_user_and_extra(self):
        extra = {'ip': '127.0.0.1', 'action': 'view'}
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('Test message', user=self.user, extra_data=extra)
        self.assertEqual(len(captured.output), 1)
        logged_message = captured.output[0]
        self.assertIn('[User: user@example.com] Test message', logged_message)
        self.assertIn('ip: 127.0.0.1', logged_message)
        self.assertIn('action: view', logged_message)

    def test_context_is_attached_to_record(self):
        with self.assertLogs('core.tests', level='INFO') as captured:
            self.logger.info('With context', user=self.user, extra_data={'workspace_id': 'w1'})
        record = captured.records[0]
        self.assertEqual(record.context['user_email'], 'user@example.com')
        self.assertEqual(record.context['user_pk'], 3)
        self.assertEqual(record.context['workspace_id'], 'w1')

    def test_security_event_uses_security_logger(self):
        with self.assertLogs('django.security', level='WARNING') as captured:
            self.logger.security_event('Suspicious activity', user=self.user)
        self.assertEqual(len(captured.output), 1)
        self.assertIn('SECURITY EVENT: Suspicious activity', captured.output[0])

    def test_critical_logs_to_alerts_logger(self):
        with self.assertLogs('alerts', level='ERROR') as alerts_log, self.assertLogs(
            'core.tests', level='CRITICAL'
        ) as core_log:
            self.logger.critical('Critical failure detected')
        self.assertTrue(any('CRITICAL: Critical failure detected' in entry for entry in alerts_log.output))
        self.assertTrue(any('Critical failure detected' in entry for entry in core_log.output))

    def test_encryption_event_logs_success_and_failure(self):
        with self.assertLogs('core.tests', level='INFO') as success_log:
            self.logger.encryption_event('Secrets decrypted', user=self.user, success=True)
        self.assertTrue(any('ENCRYPTION SUCCESS: Secrets decrypted' in entry for entry in success_log.output))

        with self.assertLogs('core.tests', level='ERROR') as failure_log:
            self.logger.encryption_event('Secrets not decrypted', user=self.user, success=False)
        self.assertTrue(any('ENCRYPTION FAILURE: Secrets not decrypted' in entry for entry in failure_log.output))

    def test_scope_event_carries_workspace_and_environment(self):
        with self.assertLogs('secret_store', level='INFO') as captured:
            get_secrets_logger().scope_event('pushed', 'w1', 'dev', extra_data={'number_of_secrets': 2})
        record = captured.records[0]
        self.assertEqual(record.getMessage().split(' |')[0], 'SECRETS pushed')
        self.assertEqual(record.context, {'workspace_id': 'w1', 'environment': 'dev', 'number_of_secrets': 2})

    def test_message_without_user_or_extra_is_left_alone(self):
        with self.assertLogs('core.tests', level='WARNING') as captured:
            self.logger.warning('Plain warning')
        self.assertEqual(captured.records[0].getMessage(), 'Plain warning')
        self.assertFalse(hasattr(captured.records[0], 'context'))


class StructuredJSONFormatterTests(SimpleTestCase):
    def make_record(self, **attributes):
        record = logging.LogRecord('secret_store', logging.INFO, __file__, 10, 'SECRETS pushed', (), None)
        for name, value in attributes.items():
            setattr(record, name, value)
        return record

    def test_formats_single_json_object(self):
        payload = json.loads(StructuredJSONFormatter().format(self.make_record(user_id='7', ip='192.0.2.1')))
        self.assertEqual(payload['message'], 'SECRETS pushed')
        self.assertEqual(payload['level'], 'INFO')
        self.assertEqual(payload['logger'], 'secret_store')
        self.assertEqual(payload['request'], {'user_id': '7', 'ip': '192.0.2.1'})
        self.assertNotIn('scope', payload)
        self.assertNotIn('context', payload)

    def test_anonymous_request_fields_are_omitted(self):
        record = self.make_record(user_id='anonymous', user_email='anonymous', ip='unknown', request_id='abc')
        payload = json.loads(StructuredJSONFormatter().format(record))
        self.assertEqual(payload['request'], {'id': 'abc'})

    def test_scope_is_split_from_context(self):
        record = self.make_record(
            ip='192.0.2.1',
            context={'workspace_id': 'w1', 'environment': 'dev', 'added': 2, 'ip': '10.0.0.9'},
        )
        payload = json.loads(StructuredJSONFormatter().format(record))
        self.assertEqual(payload['scope'], {'workspace_id': 'w1', 'environment': 'dev'})
        self.assertEqual(payload['context'], {'added': 2, 'ip': '10.0.0.9'})
        self.assertEqual(payload['request']['ip'], '192.0.2.1')

    def test_scope_event_output_nests_workspace(self):
        with self.assertLogs('secret_store', level='INFO') as captured:
            get_secrets_logger().scope_event('pushed', 'w1', 'prod', extra_data={'added': 1})

        payload = json.loads(StructuredJSONFormatter().format(captured.records[0]))
        self.assertEqual(payload['scope'], {'workspace_id': 'w1', 'environment': 'prod'})
        self.assertEqual(payload['context'], {'added': 1})

    def test_exception_is_included(self):
        try:
            raise ValueError('boom')
        except ValueError:
            record = self.make_record(exc_info=sys.exc_info())
        payload = json.loads(StructuredJSONFormatter().format(record))
        self.assertIn('ValueError: boom', payload['exc_info'])


class MiddlewareTests(SimpleTestCase):
    def test_get_client_ip_ignores_forwarded_header_from_untrusted_peer(self):
        request = SimpleNamespace(META={'HTTP_X_FORWARDED_FOR': '203.0.113.10', 'REMOTE_ADDR': '198.51.100.5'})
        self.assertEqual(get_client_ip(request), '198.51.100.5')

    @override_settings(TRUSTED_PROXY_IPS=['10.0.0.0/8'])
    def test_get_client_ip_prefers_forwarded_header_behind_trusted_proxy(self):
        request = SimpleNamespace(META={'HTTP_X_FORWARDED_FOR': 'unknown, 203.0.113.10', 'REMOTE_ADDR': '10.0.0.1'})
        self.assertEqual(get_client_ip(request), '203.0.113.10')

    @override_settings(TRUSTED_PROXY_IPS=['10.0.0.0/8'])
    def test_get_client_ip_rejects_forwarded_for_syntax(self):
        request = SimpleNamespace(META={'HTTP_X_FORWARDED_FOR': 'for=203.0.113.10', 'REMOTE_ADDR': '10.0.0.1'})
        self.assertEqual(get_client_ip(request), '10.0.0.1')

    @override_settings(TRUSTED_PROXY_IPS=['10.0.0.0/8'])
    def test_get_client_ip_strips_bracketed_ipv6_port(self):
        request = SimpleNamespace(META={'HTTP_X_FORWARDED_FOR': '[2001:db8::1]:443', 'REMOTE_ADDR': '10.0.0.1'})
        self.assertEqual(get_client_ip(request), '2001:db8::1')

    def test_get_client_ip_unknown_without_address(self):
        self.assertEqual(get_client_ip(SimpleNamespace(META={})), 'unknown')

    def test_user_id_filter_adds_context_information(self):
        _request_data.user_id = '42'
        _request_data.ip_address = '192.0.2.55'
        _request_data.request_id = 'req-1'
        _request_data.method = 'GET'
        try:
            record = logging.LogRecord('test', logging.INFO, __file__, 10, 'msg', (), None)
            UserIdFilter().filter(record)
            self.assertEqual(record.user_id, '42')
            self.assertEqual(record.user_email, 'anonymous')
            self.assertEqual(record.ip, '192.0.2.55')
            self.assertEqual(record.request_id, 'req-1')
            self.assertEqual(record.http_method, 'GET')
        finally:
            for attribute in ('user_id', 'ip_address', 'request_id', 'method'):
                delattr(_request_data, attribute)

    def test_logging_middleware_populates_and_cleans_context(self):
        class AuthenticatedUser:
            is_authenticated = True
            id = 7
            email = 'member@example.com'

        request = RequestFactory().get('/api/v2/workspace/', REMOTE_ADDR='198.51.100.7', HTTP_X_REQUEST_ID='abc123')
        request.user = AuthenticatedUser()

        captured_state = {}

        def get_response(request):
            captured_state['context'] = get_request_context()
            return HttpResponse('ok')

        response = LoggingMiddleware(get_response)(request)

        self.assertEqual(response['X-Request-ID'], 'abc123')
        self.assertEqual(request.request_id, 'abc123')
        context = captured_state['context']
        self.assertEqual(context['user_id'], '7')
        self.assertEqual(context['user_email'], 'member@example.com')
        self.assertEqual(context['ip_address'], '198.51.100.7')
        self.assertEqual(context['method'], 'GET')
        self.assertEqual(context['path'], '/api/v2/workspace/')
        self.assertEqual(get_request_context(), {})

    def test_logging_middleware_generates_request_id(self):
        request = RequestFactory().get('/metrics')
        response = LoggingMiddleware(lambda r: HttpResponse('ok'))(request)
        self.assertEqual(len(response['X-Request-ID']), 32)
        self.assertEqual(get_request_context(), {})
