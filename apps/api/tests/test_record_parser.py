import json

import pytest

from services.record_parser import (
    DataFormat,
    RecordParser,
    coerce_value,
    parse_chunk,
    parse_json_document,
    sniff_format,
    split_delimited_line,
)


SAMPLE_CSV = (
    "Subject_ID,Label,fixation_duration_avg,regression_rate,notes\n"
    "s1,dyslexic,310.5,0.42,\"slow, careful\"\n"
    "s2,control,205,0.11,none\n"
    ",control,199,0.10,missing id\n"
    "s3,D,290,0.35,\n"
    "s4,  ,250,0.2,blank label\n"
    "s5,1,301,0.39,last"
)


def _parse_whole(text):
    parser = RecordParser()
    return parser.feed(text) + parser.finish(), parser.skipped


def test_split_respects_quoted_commas():
    assert split_delimited_line('a,"b,c",d') == ["a", '"b,c"', "d"]
    assert split_delimited_line("a,,c") == ["a", "", "c"]


def test_coerce_value_keeps_non_finite_and_text_as_strings():
    assert coerce_value("12.5") == 12.5
    assert coerce_value('"7"') == 7.0
    assert coerce_value("nan") == "nan"
    assert coerce_value("inf") == "inf"
    assert coerce_value("control") == "control"
    assert coerce_value("") == ""


@pytest.mark.parametrize(
    "token, expected",
    [("1e3", 1000.0), (".5", 0.5), ("-3.", -3.0), ("+2E-2", 0.02),
     ("1_000", "1_000"), ("\u0661\u0662", "\u0661\u0662"), ("0x1F", "0x1F"), ("1e400", "1e400")],
)
def test_coerce_value_accepts_only_plain_decimal_notation(token, expected):
    assert coerce_value(token) == expected


def test_header_is_lowercased_and_rows_map_positionally():
    records, skipped = _parse_whole(SAMPLE_CSV)

    assert [record["subject_id"] for record in records] == ["s1", "s2", "s3", "s5"]
    assert records[0]["fixation_duration_avg"] == 310.5
    assert records[0]["notes"] == "slow, careful"
    assert records[3]["label"] == 1.0
    assert skipped == 2


@pytest.mark.parametrize("offset", range(1, len(SAMPLE_CSV)))
def test_split_at_any_offset_matches_single_pass(offset):
    expected, expected_skipped = _parse_whole(SAMPLE_CSV)

    parser = RecordParser()
    records = parser.feed(SAMPLE_CSV[:offset])
    records += parser.feed(SAMPLE_CSV[offset:])
    records += parser.finish()

    assert records == expected
    assert parser.skipped == expected_skipped


def test_many_small_chunks_match_single_pass():
    expected, _ = _parse_whole(SAMPLE_CSV)
    parser = RecordParser()
    records = []
    for start in range(0, len(SAMPLE_CSV), 3):
        records += parser.feed(SAMPLE_CSV[start:start + 3])
    records += parser.finish()
    assert records == expected


def test_parse_chunk_returns_trailing_fragment_as_leftover():
    result = parse_chunk("subject_id,label\ns1,yes\ns2,n")
    assert result.header == ["subject_id", "label"]
    assert [record["subject_id"] for record in result.records] == ["s1"]
    assert result.leftover == "s2,n"

    tail = parse_chunk(result.leftover + "o\n", result.header, final=True)
    assert tail.records == [{"subject_id": "s2", "label": "no"}]
    assert tail.leftover == ""


def test_crlf_and_blank_lines_are_tolerated():
    records, skipped = _parse_whole("subject_id,label,score\r\n\r\ns1,yes,1\r\n\r\ns2,no,2\r\n")
    assert [record["score"] for record in records] == [1.0, 2.0]
    assert skipped == 0


def test_short_rows_only_fill_leading_columns():
    records, _ = _parse_whole("subject_id,label,a,b\ns1,yes,5")
    assert records == [{"subject_id": "s1", "label": "yes", "a": 5.0}]


def test_sniff_format():
    assert sniff_format('[{"subject_id": "a"}]') is DataFormat.JSON
    assert sniff_format('  {"subjects": []}') is DataFormat.JSON
    assert sniff_format("subject_id,label\n") is DataFormat.DELIMITED
    assert sniff_format("\ufeffsubject_id,label\n") is DataFormat.DELIMITED
    assert sniff_format("[not json") is DataFormat.DELIMITED
    assert sniff_format("[not json", complete=False) is DataFormat.JSON
    assert sniff_format(" \n\t") is DataFormat.UNRECOGNIZED
    assert sniff_format("") is DataFormat.UNRECOGNIZED


@pytest.mark.parametrize("wrapper", ["subjects", "data", "records"])
def test_json_wrapper_objects(wrapper):
    text = json.dumps(
        {
            wrapper: [
                {"subject_id": "a", "label": "dyslexic", "chaos_index": 0.8},
                {"subject_id": "b"},
                {"subject_id": "c", "label": "control", "chaos_index": 0.2},
            ]
        }
    )
    records, skipped = parse_json_document(text)
    assert [record["subject_id"] for record in records] == ["a", "c"]
    assert skipped == 1


def test_json_array_drops_non_objects_and_blank_identity():
    text = json.dumps([{"subject_id": "a", "label": "1"}, "junk", {"subject_id": " ", "label": "1"}])
    records, skipped = parse_json_document(text)
    assert records == [{"subject_id": "a", "label": "1"}]
    assert skipped == 2


def test_json_object_without_known_wrapper_yields_nothing():
    assert parse_json_document(json.dumps({"rows": [{"subject_id": "a", "label": "x"}]})) == ([], 0)


def test_invalid_json_raises_value_error():
    with pytest.raises(ValueError):
        parse_json_document("[{")
