import pytest

from handynet.bench import (
    ClientReport,
    ServerReport,
    _client_table,
    _record_client_report,
    _record_server_report,
    _server_table,
    client_main,
    parse_client_report,
    parse_server_report,
    server_main,
)


def test_parse_client_report_fields():
    pid, report = parse_client_report(b"4321 connected: 10 retry: 2 send: 7 recved: 9")
    assert pid == 4321
    assert report == ClientReport(connected=10, retry=2, sended=7, recved=9)


def test_parse_client_report_accepts_str():
    pid, report = parse_client_report("17 connected: -3 retry: 0 send: 0 recved: 1")
    assert pid == 17
    assert report.connected == -3
    assert report.recved == 1


def test_parse_server_report_fields():
    pid, report = parse_server_report(b"99 connected: 5 closed: 1 recved: 12")
    assert pid == 99
    assert report == ServerReport(connected=5, closed=1, recved=12)


@pytest.mark.parametrize("line", [b"", b"1 connected: 2", b"1 connected: 2 closed: 3 recved: 4"])
def test_parse_client_report_wrong_field_count(line):
    with pytest.raises(ValueError):
        parse_client_report(line)


@pytest.mark.parametrize("line", [b"", b"1 connected: 2 retry: 3 send: 4 recved: 5"])
def test_parse_server_report_wrong_field_count(line):
    with pytest.raises(ValueError):
        parse_server_report(line)


def test_non_numeric_field_reads_as_zero():
    pid, report = parse_server_report(b"abc connected: x closed: 4z recved: 8")
    assert pid == 0
    assert report == ServerReport(connected=0, closed=4, recved=8)


def test_record_client_report_updates_and_ignores_bad_lines():
    subs = {}
    _record_client_report(subs, b"5 connected: 1 retry: 2 send: 3 recved: 4")
    _record_client_report(subs, b"garbage")
    assert subs == {5: ClientReport(1, 2, 3, 4)}
    _record_client_report(subs, b"5 connected: 6 retry: 2 send: 3 recved: 4")
    assert subs[5].connected == 6


def test_record_server_report_ignores_bad_lines():
    subs = {}
    _record_server_report(subs, b"1 2 3")
    assert subs == {}


def test_client_table_format_and_order():
    lines = _client_table({30: ClientReport(1, 2, 3, 4), 2: ClientReport(5, 6, 7, 8)})
    assert len(lines) == 2
    assert lines[0] == "pid:      2 connected      5 retry      6 sended      7 recved      8"
    assert lines[1].startswith("pid:     30 ")


def test_server_table_format():
    lines = _server_table({7: ServerReport(1, 2, 3)})
    assert lines == ["pid:      7 connected      1 closed:      2 recved      3"]


def test_client_main_usage(capsys):
    assert client_main(["localhost", "1000"]) == 1
    assert "usage" in capsys.readouterr().out


def test_server_main_usage(capsys):
    assert server_main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_client_main_rejects_zero_processes(capsys):
    argv = ["localhost", "1000", "1010", "100", "1", "0", "0", "64", "2000"]
    assert client_main(argv) == 1
    assert "subprocesses" in capsys.readouterr().err


def test_server_main_rejects_empty_port_range(capsys):
    assert server_main(["1010", "1000", "1", "2000"]) == 1
    assert "port" in capsys.readouterr().err