"""
Unit tests for event filtering and output-key routing
"""

import dataclasses
import pytest
import sys
import os

# Add lambda/shared to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../lambda/shared'))

from pipeline_errors import InputError
from routing import (
    REASON_OUT_OF_SCOPE,
    REASON_UNSUPPORTED_EXTENSION,
    SHAPE_EVENTBRIDGE,
    SHAPE_S3_NOTIFICATION,
    SHAPE_S3_RECORD,
    RoutingPolicy,
    derive_output_key,
    evaluate,
    extension_of,
    is_eligible,
    resolve_event,
)

SAME_FOLDER = RoutingPolicy()
SEPARATE_FOLDER = RoutingPolicy(input_prefix='input/', output_prefix='output/')
SCOPED_SAME_FOLDER = RoutingPolicy(input_prefix='uploads/')


def s3_notification(bucket, key):
    return {'Records': [{'eventName': 'ObjectCreated:Put',
                         's3': {'bucket': {'name': bucket}, 'object': {'key': key, 'size': 10}}}]}


def eventbridge_event(bucket, key):
    return {
        'source': 'aws.s3',
        'detail-type': 'Object Created',
        'detail': {'bucket': {'name': bucket}, 'object': {'key': key}},
    }


class TestResolveEvent:
    """Tests for the payload adapter"""

    def test_s3_notification(self):
        event = resolve_event(s3_notification('my-bucket', 'decks/a.pptx'))
        assert event.shape == SHAPE_S3_NOTIFICATION
        assert event.bucket == 'my-bucket'
        assert event.raw_key == 'decks/a.pptx'

    def test_eventbridge_envelope(self):
        event = resolve_event(eventbridge_event('my-bucket', 'decks/a.pptx'))
        assert event.shape == SHAPE_EVENTBRIDGE
        assert event.bucket == 'my-bucket'
        assert event.raw_key == 'decks/a.pptx'

    def test_single_record(self):
        event = resolve_event({'s3': {'bucket': {'name': 'b'}, 'object': {'key': 'k.ppt'}}})
        assert event.shape == SHAPE_S3_RECORD
        assert (event.bucket, event.raw_key) == ('b', 'k.ppt')

    def test_bare_bucket_object(self):
        event = resolve_event({'bucket': {'name': 'b'}, 'object': {'key': 'k.ppt'}})
        assert event.shape == SHAPE_S3_RECORD
        assert (event.bucket, event.raw_key) == ('b', 'k.ppt')

    @pytest.mark.parametrize('payload', [
        None,
        'not-a-dict',
        {},
        {'foo': 'bar'},
        {'detail': {'bucket': {'name': 'b'}}},
        {'detail': {'object': {'key': 'a.pptx'}}},
        {'detail': {'bucket': {'name': ''}, 'object': {'key': 'a.pptx'}}},
        {'detail': {'bucket': 'b', 'object': {'key': 'a.pptx'}}},
        {'detail': 'oops'},
        {'Records': []},
        {'Records': 'oops'},
        {'Records': [{'s3': {}}]},
    ])
    def test_malformed_payloads_raise_input_error(self, payload):
        with pytest.raises(InputError):
            resolve_event(payload)

    def test_shape_carried_into_decision(self):
        eligible = evaluate(eventbridge_event('b', 'a.pptx'), SAME_FOLDER)
        skipped = evaluate(s3_notification('b', 'a.pdf'), SAME_FOLDER)
        assert eligible.source_shape == SHAPE_EVENTBRIDGE
        assert skipped.source_shape == SHAPE_S3_NOTIFICATION

    def test_multiple_records_rejected(self):
        payload = s3_notification('b', 'a.pptx')
        payload['Records'].append(payload['Records'][0])
        with pytest.raises(InputError, match="exactly one"):
            resolve_event(payload)


class TestKeyDecoding:
    """Tests for URL-decoding of notification keys"""

    def test_plus_becomes_space(self):
        decision = evaluate(s3_notification('b', 'Quarterly+Review.pptx'), SAME_FOLDER)
        assert decision.request.source_key == 'Quarterly Review.pptx'
        assert decision.output_key == 'Quarterly Review.pdf'

    def test_percent_escapes_decoded(self):
        decision = evaluate(eventbridge_event('b', 'decks/%E8%B3%87%E6%96%99+v2.pptx'), SAME_FOLDER)
        assert decision.request.source_key == 'decks/資料 v2.pptx'

    def test_encoded_plus_kept_literal(self):
        decision = evaluate(s3_notification('b', 'a%2Bb.ppt'), SAME_FOLDER)
        assert decision.request.source_key == 'a+b.ppt'


class TestExtension:
    """Tests for extension extraction"""

    @pytest.mark.parametrize('key,expected', [
        ('deck.pptx', '.pptx'),
        ('dir/Deck.PPT', '.ppt'),
        ('a.b.c.pptx', '.pptx'),
        ('folder.pptx/readme', ''),
        ('noext', ''),
        ('dir/.pptx', ''),
        ('dir/', ''),
    ])
    def test_extension_of(self, key, expected):
        assert extension_of(key) == expected


class TestEligibility:
    """Tests for the eligibility rules"""

    @pytest.mark.parametrize('key', [
        'deck.pdf', 'deck.PDF', 'notes.docx', 'image.png', 'archive.pptx.zip',
        'deck.pptm', 'deck.ppsx', 'deck', 'dir/', 'dir/.pptx', 'deck.pptx.pdf',
    ])
    def test_unsupported_extension(self, key):
        decision = evaluate(s3_notification('b', key), SAME_FOLDER)
        assert decision.eligible is False
        assert decision.reason == REASON_UNSUPPORTED_EXTENSION
        assert decision.output_key is None

    @pytest.mark.parametrize('key', ['deck.ppt', 'deck.pptx', 'Report.PPTX', 'a/b/c.Ppt'])
    def test_supported_extensions(self, key):
        decision = evaluate(s3_notification('b', key), SAME_FOLDER)
        assert decision.eligible is True
        assert decision.reason is None

    def test_outside_input_prefix(self):
        decision = evaluate(s3_notification('b', 'other/deck.pptx'), SEPARATE_FOLDER)
        assert decision.eligible is False
        assert decision.reason == REASON_OUT_OF_SCOPE

    def test_scope_checked_before_extension(self):
        decision = evaluate(s3_notification('b', 'other/deck.pdf'), SEPARATE_FOLDER)
        assert decision.reason == REASON_OUT_OF_SCOPE

    def test_inside_input_prefix(self):
        decision = evaluate(s3_notification('b', 'input/deck.pptx'), SEPARATE_FOLDER)
        assert decision.eligible is True


class TestDeriveOutputKey:
    """Tests for output-key derivation"""

    def test_same_folder_ppt(self):
        assert derive_output_key('deck.ppt', SAME_FOLDER) == 'deck.pdf'

    def test_same_folder_keeps_path(self):
        assert derive_output_key('team/2024/plan.pptx', SAME_FOLDER) == 'team/2024/plan.pdf'

    def test_mixed_case_extension(self):
        output = derive_output_key('Report.PPTX', SAME_FOLDER)
        assert output == 'Report.pdf'

    def test_only_trailing_suffix_replaced(self):
        assert derive_output_key('old.pptx.backup.pptx', SAME_FOLDER) == 'old.pptx.backup.pdf'

    def test_separate_folder_nested(self):
        assert derive_output_key('input/a/b.pptx', SEPARATE_FOLDER) == 'output/a/b.pdf'

    def test_separate_folder_top_level(self):
        assert derive_output_key('input/deck.ppt', SEPARATE_FOLDER) == 'output/deck.pdf'

    def test_separate_folder_prefixes_without_slash(self):
        policy = RoutingPolicy(input_prefix='input', output_prefix='output')
        assert derive_output_key('input/a/b.pptx', policy) == 'output/a/b.pdf'

    def test_separate_folder_without_input_prefix(self):
        policy = RoutingPolicy(output_prefix='pdf/')
        assert derive_output_key('a/b.pptx', policy) == 'pdf/a/b.pdf'

    def test_unsupported_key_rejected(self):
        with pytest.raises(ValueError):
            derive_output_key('deck.pdf', SAME_FOLDER)


class TestAntiLoop:
    """The converter's own output must never be eligible"""

    KEYS = [
        'deck.ppt', 'deck.pptx', 'Report.PPTX', 'a/b/c.pptx', 'a b/c d.ppt',
        'input/deck.pptx', 'input/a/b/c.PPT', 'uploads/x.pptx', 'uploads/y/z.ppt',
    ]

    @pytest.mark.parametrize('policy', [
        SAME_FOLDER,
        SEPARATE_FOLDER,
        SCOPED_SAME_FOLDER,
        RoutingPolicy(output_prefix='converted/'),
        RoutingPolicy(input_prefix='input', output_prefix='output'),
    ])
    def test_output_key_never_eligible(self, policy):
        eligible_keys = [k for k in self.KEYS if is_eligible(k, policy)]
        assert eligible_keys
        for key in eligible_keys:
            output_key = derive_output_key(key, policy)
            assert output_key.endswith('.pdf')
            assert not is_eligible(output_key, policy), (key, output_key)


class TestRoutingPolicy:
    """Tests for policy construction"""

    def test_defaults(self):
        policy = RoutingPolicy.from_env({})
        assert policy.input_prefix == ''
        assert policy.output_prefix == ''
        assert policy.separate_folder is False

    def test_from_env(self):
        policy = RoutingPolicy.from_env({'INPUT_PREFIX': 'input/', 'OUTPUT_PREFIX': 'output/'})
        assert policy == SEPARATE_FOLDER
        assert policy.separate_folder is True

    @pytest.mark.parametrize('input_prefix,output_prefix', [
        ('docs/', 'docs/'),
        ('docs/', 'docs/pdf/'),
        ('docs/in/', 'docs/'),
    ])
    def test_overlapping_prefixes_rejected(self, input_prefix, output_prefix):
        with pytest.raises(ValueError, match="must not overlap"):
            RoutingPolicy(input_prefix=input_prefix, output_prefix=output_prefix)

    def test_policy_is_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            SAME_FOLDER.input_prefix = 'x/'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
