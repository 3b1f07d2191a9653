from screeps_stats.display import format_rows


def test_format_rows_renders_bordered_table():
    text = format_rows(
        "rooms",
        [
            {"room": "W1N1", "energy": 300},
            {"room": "W12N3", "safe": True, "parts": ["work", "move"], "energy": None},
        ],
    )

    lines = text.splitlines()
    assert lines[0] == "[rooms]"
    assert [cell.strip() for cell in lines[1].split("|")[1:-1]] == [
        "room",
        "energy",
        "safe",
        "parts",
    ]
    assert set(lines[2]) == {"+", "-"}
    assert len(lines[2]) == len(lines[1]) == len(lines[3]) == len(lines[4])
    assert "W1N1" in lines[3] and "300" in lines[3]
    assert "null" in lines[4] and "true" in lines[4] and "work,move" in lines[4]


def test_format_rows_truncates_long_batches():
    rows = [{"n": i} for i in range(15)]

    lines = format_rows("counts", rows, max_rows=11).splitlines()

    assert len(lines) == 1 + 2 + 11 + 1
    assert lines[-1] == "... 4 more rows ..."
