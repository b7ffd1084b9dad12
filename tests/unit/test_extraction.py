"""Unit tests for the extraction pipeline."""

import json
from unittest.mock import MagicMock

import pytest

from conftest import SAMPLE_DIRECTORY, FakeBridge
from contactcache.errors import BridgeError, BridgeUnavailable
from contactcache.extraction import ExtractionPipeline
from contactcache.models import CapabilitySource, MessageClassification
from contactcache.store import CacheStore


def make_pipeline(bridge, **kwargs):
    kwargs.setdefault("sleep", MagicMock())
    return ExtractionPipeline(bridge, **kwargs)


class TestExtractAll:
    def test_parses_directory(self, fake_bridge):
        contacts = make_pipeline(fake_bridge).extract_all()
        by_name = {c.name: c for c in contacts}

        assert set(by_name) == {"Ana Samat", "Liliana Ortiz", "Bob Smith"}
        assert by_name["Ana Samat"].phone_numbers == ["+1 (617) 555-1234", "617-555-9999"]
        assert by_name["Ana Samat"].emails == ["ana@example.com"]
        assert by_name["Bob Smith"].emails == ["bob@example.com", "bobby@example.com"]
        assert by_name["Liliana Ortiz"].emails == []

    def test_people_without_phones_dropped(self, fake_bridge):
        contacts = make_pipeline(fake_bridge).extract_all()
        assert "No Phone Person" not in {c.name for c in contacts}

    def test_duplicate_names_last_wins(self):
        bridge = FakeBridge("Ana Samat\t111-111-1111\t\nana samat\t222-222-2222\t")
        contacts = make_pipeline(bridge).extract_all()

        assert len(contacts) == 1
        assert contacts[0].phone_numbers == ["222-222-2222"]

    def test_all_entries_share_timestamp(self, fake_bridge):
        contacts = make_pipeline(fake_bridge).extract_all()
        assert len({c.last_updated for c in contacts}) == 1

    def test_bridge_error_propagates(self, fake_bridge):
        """A failed enumeration must not look like an empty directory."""
        fake_bridge.list_error = BridgeUnavailable("Contacts enumeration failed: (-1712)")
        with pytest.raises(BridgeUnavailable):
            make_pipeline(fake_bridge).extract_all()

    def test_empty_directory(self):
        assert make_pipeline(FakeBridge("")).extract_all() == []


class TestProbeNumber:
    def test_rich_association(self, fake_bridge):
        record = make_pipeline(fake_bridge).probe_number("+16175551234")
        assert record.classification == MessageClassification.RICH
        assert record.source == CapabilitySource.ASSOCIATION
        assert record.confidence == 0.9

    def test_basic_association(self, fake_bridge):
        record = make_pipeline(fake_bridge).probe_number("+16175559999")
        assert record.classification == MessageClassification.BASIC
        assert record.confidence == 0.8

    def test_probe_error_is_unknown_low_confidence(self, fake_bridge):
        """A failed probe is recorded, never raised."""
        record = make_pipeline(fake_bridge).probe_number("+34618823793")
        assert record.classification == MessageClassification.UNKNOWN
        assert record.source == CapabilitySource.ERROR
        assert record.confidence == 0.1

    def test_heuristic_domestic_is_rich(self):
        """Confidence follows the classification, however it was reached."""
        record = make_pipeline(FakeBridge()).probe_number("+14155550100")
        assert record.classification == MessageClassification.RICH
        assert record.source == CapabilitySource.HEURISTIC
        assert record.confidence == 0.9

    def test_heuristic_international_is_basic(self):
        record = make_pipeline(FakeBridge()).probe_number("+442079460958")
        assert record.classification == MessageClassification.BASIC
        assert record.source == CapabilitySource.HEURISTIC
        assert record.confidence == 0.8

    def test_confidence_overridable_in_config(self, fake_bridge, tmp_path, monkeypatch):
        from contactcache import config
        cfg_file = tmp_path / "config.local.yaml"
        cfg_file.write_text("probe:\n  confidence:\n    rich: 0.95\n")
        monkeypatch.setattr(config, "LOCAL_CONFIG_FILE", cfg_file)
        config.reload()

        pipeline = make_pipeline(fake_bridge)
        assert pipeline.probe_number("+16175551234").confidence == 0.95
        assert pipeline.probe_number("+14155550100").confidence == 0.95
        assert pipeline.probe_number("+16175559999").confidence == 0.8


class TestProbeCapabilities:
    def test_batches_with_pause_between(self):
        sleep = MagicMock()
        bridge = FakeBridge()
        numbers = [f"+1617555{i:04d}" for i in range(25)]

        records = make_pipeline(bridge, batch_size=10, batch_pause=0.25, sleep=sleep).probe_capabilities(numbers)

        assert len(records) == 25
        # 3 batches -> 2 pauses, none after the last batch
        assert sleep.call_count == 2
        sleep.assert_called_with(0.25)

    def test_deduplicates_and_sorts(self):
        bridge = FakeBridge()
        records = make_pipeline(bridge).probe_capabilities(["+16175550002", "+16175550001", "+16175550002"])

        assert bridge.probe_calls == ["+16175550001", "+16175550002"]
        assert [r.canonical_number for r in records] == ["+16175550001", "+16175550002"]

    def test_one_failure_does_not_stop_the_rest(self):
        bridge = FakeBridge(probes={"+16175550001": BridgeError("boom")})
        records = make_pipeline(bridge).probe_capabilities(["+16175550001", "+16175550002"])

        assert [r.source for r in records] == [CapabilitySource.ERROR, CapabilitySource.HEURISTIC]

    def test_empty_input(self):
        sleep = MagicMock()
        assert make_pipeline(FakeBridge(), sleep=sleep).probe_capabilities([]) == []
        sleep.assert_not_called()


class TestRun:
    def test_builds_snapshot_keyed_by_canonical_number(self, fake_bridge):
        snapshot = make_pipeline(fake_bridge).run()

        assert sorted(snapshot.contacts) == ["ana samat", "bob smith", "liliana ortiz"]
        assert sorted(snapshot.capabilities) == [
            "+14155550100", "+16175551234", "+16175559999", "+34618823793",
        ]
        assert snapshot.capabilities["+16175551234"].classification == MessageClassification.RICH
        assert snapshot.capabilities["+34618823793"].classification == MessageClassification.UNKNOWN
        assert snapshot.metadata.contacts_count == 3
        assert snapshot.metadata.capabilities_count == 4

    def test_enumeration_failure_aborts_run(self, fake_bridge):
        fake_bridge.list_error = BridgeError("nope")
        with pytest.raises(BridgeError):
            make_pipeline(fake_bridge).run()
        assert fake_bridge.probe_calls == []

    def test_identical_directory_saves_identical_files(self, tmp_path):
        """Two runs over the same directory differ only in their timestamps."""
        timestamps = {"last_updated", "last_tested", "last_full_update"}

        def strip(payload):
            if isinstance(payload, dict):
                return {k: strip(v) for k, v in payload.items() if k not in timestamps}
            if isinstance(payload, list):
                return [strip(v) for v in payload]
            return payload

        saved = []
        for name in ("first", "second"):
            bridge = FakeBridge(SAMPLE_DIRECTORY, probes={"+16175551234": "imessage"})
            store = CacheStore(tmp_path / name)
            store.save(make_pipeline(bridge).run())
            saved.append(store)

        first, second = saved
        for attr in ("contacts_file", "capabilities_file", "metadata_file"):
            a = json.loads(getattr(first, attr).read_text())
            b = json.loads(getattr(second, attr).read_text())
            assert strip(a) == strip(b)
        assert strip(json.loads(first.contacts_file.read_text()))[0]["name"] == "Ana Samat"
