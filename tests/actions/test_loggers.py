import json
import logging

import pytest

from gitopsd._core.actions.loggers import LogFormat, ObjectJsonFormatter, ObjectLogger, \
                                          ObjectPrefixingJsonFormatter, \
                                          ObjectPrefixingTextFormatter, ObjectTextFormatter, \
                                          configure, make_formatter


def _make_record(kwargs):
    rec = logging.LogRecord('gitopsd.objects', logging.INFO, __file__, 1, "hello", (), None)
    for key, val in kwargs['extra'].items():
        setattr(rec, key, val)
    return rec


def test_object_logger_carries_the_reference(event_factory):
    event = event_factory('name1', namespace='ns1', uid='uid1')
    logger = ObjectLogger(event=event)
    _, kwargs = logger.process("hello", {'extra': {'other': 'value'}})
    assert kwargs['extra'] == {
        'k8s_ref': {'kind': 'GitOpsDeployment', 'name': 'name1', 'uid': 'uid1', 'namespace': 'ns1'},
        'other': 'value',
    }


def test_prefixing_text_formatter(event_factory):
    event = event_factory('name1', namespace='ns1', uid='uid1')
    _, kwargs = ObjectLogger(event=event).process("hello", {})
    formatter = ObjectPrefixingTextFormatter('%(message)s')
    assert formatter.format(_make_record(kwargs)) == '[ns1/name1] hello'


def test_prefixing_of_the_cluster_scoped_objects(event_factory):
    event = event_factory('name1', namespace=None)
    _, kwargs = ObjectLogger(event=event).process("hello", {})
    formatter = ObjectPrefixingTextFormatter('%(message)s')
    assert formatter.format(_make_record(kwargs)) == '[name1] hello'


def test_json_formatter_with_a_refkey(event_factory):
    event = event_factory('name1', namespace='ns1', uid='uid1')
    _, kwargs = ObjectLogger(event=event).process("hello", {})
    formatter = ObjectJsonFormatter(refkey='k8s')
    data = json.loads(formatter.format(_make_record(kwargs)))
    assert data['message'] == 'hello'
    assert data['severity'] == 'info'
    assert data['k8s'] == {'kind': 'GitOpsDeployment', 'name': 'name1', 'uid': 'uid1', 'namespace': 'ns1'}
    assert 'k8s_ref' not in data


@pytest.mark.parametrize('log_format, log_prefix, expected_cls', [
    (LogFormat.PLAIN, True, ObjectPrefixingTextFormatter),
    (LogFormat.PLAIN, False, ObjectTextFormatter),
    (LogFormat.FULL, None, ObjectPrefixingTextFormatter),
    (LogFormat.JSON, None, ObjectJsonFormatter),
    (LogFormat.JSON, True, ObjectPrefixingJsonFormatter),
    ('%(message)s', False, ObjectTextFormatter),
])
def test_formatter_selection(log_format, log_prefix, expected_cls):
    formatter = make_formatter(log_format=log_format, log_prefix=log_prefix)
    assert type(formatter) is expected_cls


@pytest.mark.parametrize('kwargs, level', [
    (dict(), logging.INFO),
    (dict(verbose=True), logging.DEBUG),
    (dict(debug=True), logging.DEBUG),
    (dict(quiet=True), logging.WARNING),
])
def test_configuring_the_levels(kwargs, level):
    root = logging.getLogger()
    handlers, old_level = list(root.handlers), root.level
    try:
        configure(**kwargs)
        assert root.level == level
    finally:
        root.handlers[:] = handlers
        root.setLevel(old_level)
