"""
Tag id extraction over the payload shapes gateways actually send.
"""

from rfidtunnel.tag_extract import decode_payload, extract_all_tag_ids, extract_first_tag_id


def test_epc_key_wins_over_everything_else():
    payload = {"tag": {"id": "OTHER1"}, "data": "DATA01", "id": "ID0001", "epc": "  E2801160  "}
    assert extract_first_tag_id(payload) == "E2801160", "epc must win and come back trimmed"


def test_priority_key_order():
    assert extract_first_tag_id({"id": "ID0001", "tagId": "TAG001"}) == "TAG001"
    assert extract_first_tag_id({"EPC": "UPPER1", "tagEPC": "MIXED1"}) == "MIXED1"


def test_non_string_priority_value_is_skipped():
    # 12345 is not an id; the walk falls through to the remaining values
    assert extract_first_tag_id({"epc": 12345, "reader": "READER-7"}) == "READER-7"


def test_blank_priority_value_is_skipped():
    assert extract_first_tag_id({"epc": "   ", "tag": "ABCDEF"}) == "ABCDEF"


def test_tags_list_first_match():
    assert extract_first_tag_id({"tags": [{"id": "A"}, {"id": "B"}]}) == "A"


def test_nested_tag_and_data_wrappers():
    assert extract_first_tag_id({"tag": {"epc": "300833B2"}}) == "300833B2"
    assert extract_first_tag_id({"data": {"tags": [{"tagId": "E200-1234"}]}}) == "E200-1234"
    assert extract_first_tag_id({"data": ["", None, "E2003412"]}) == "E2003412"


def test_plain_strings_and_loose_fallback():
    assert extract_first_tag_id("  E28011606000  ") == "E28011606000"
    assert extract_first_tag_id("not-hex but text") == "not-hex but text"
    assert extract_first_tag_id("   ") is None


def test_scalars_are_never_ids():
    for value in (None, 0, 42, 3.5, True, False):
        assert extract_first_tag_id(value) is None, f"{value!r} should not yield an id"
    assert extract_first_tag_id({"rssi": -61, "antenna": 2}) is None
    assert extract_first_tag_id([]) is None
    assert extract_first_tag_id({}) is None


def test_deeply_nested_payload_still_yields_its_id():
    payload = "E2801160"
    for i in range(100_000):
        payload = [payload] if i % 2 else {"data": payload, "rssi": -60}
    assert extract_first_tag_id(payload) == "E2801160"
    assert extract_all_tag_ids(payload) == ["E2801160"]


def test_all_ids_dedups_self_match():
    payload = {"epc": "AAAA1111", "tags": [{"id": "AAAA1111"}, {"id": "BBBB2222"}]}
    assert extract_all_tag_ids(payload) == ["AAAA1111", "BBBB2222"]


def test_all_ids_drops_short_ids():
    assert extract_all_tag_ids({"epc": "ABC"}) == []
    assert extract_all_tag_ids({"tags": ["ABCD", "XY", "ABCD", "EFGH"]}) == ["ABCD", "EFGH"]
    assert extract_all_tag_ids({"epc": "ABC"}, min_len=3) == ["ABC"]


def test_all_ids_only_expands_top_level_tags():
    # a list payload contributes its first id only
    assert extract_all_tag_ids([{"epc": "AAAA1111"}, {"epc": "BBBB2222"}]) == ["AAAA1111"]


def test_decode_payload_wraps_bad_json():
    assert decode_payload('{"epc": "AAAA1111"}') == {"epc": "AAAA1111"}
    assert decode_payload("{broken") == {"raw": "{broken"}
    assert decode_payload("") == {"raw": ""}


def test_decode_payload_wraps_json_too_deep_to_decode():
    raw = "[" * 100_000 + "]" * 100_000
    assert decode_payload(raw) == {"raw": raw}
