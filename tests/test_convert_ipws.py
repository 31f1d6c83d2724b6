"""
End-to-end tests for the conversion pipeline and its CLI.
"""

import gzip

import pyarrow.parquet as pq
import pytest

from conftest import INFO_LINES, WS_LINES, write_lines
from convert_ipws import (
    STOP_ABORTED,
    STOP_EXHAUSTED,
    STOP_LIMIT,
    ConversionOptions,
    main,
    run_conversion,
)
from ipws_records import Classification

NON_IP = Classification.NON_IP
NON_REFLEXIVE = Classification.NON_REFLEXIVE
REFLEXIVE = Classification.REFLEXIVE


def keys(path):
    return pq.read_table(path, columns=["key"]).column("key").to_pylist()


def options(ws_file, info_file, outputs, **kwargs):
    return ConversionOptions(ws_in=ws_file, polytope_info_in=info_file, outputs=outputs, **kwargs)


class TestRunConversion:
    """Tests for run_conversion()."""

    def test_run_when_mixed_input_then_partitions_and_counts(self, ws_file, info_file, outputs):
        """Each record lands in its partition; the gap is counted, not written."""
        stats = run_conversion(options(ws_file, info_file, outputs))

        assert not stats.failed
        assert stats.stop_reason == STOP_EXHAUSTED
        assert (stats.ws_read, stats.polytope_info_read, stats.correlated) == (4, 3, 3)
        assert stats.gaps == 1
        assert stats.malformed == 0
        assert keys(outputs[NON_IP]) == [1]
        assert keys(outputs[REFLEXIVE]) == [2]
        assert keys(outputs[NON_REFLEXIVE]) == [3]
        assert stats.written == {NON_IP: 1, NON_REFLEXIVE: 1, REFLEXIVE: 1}
        assert stats.classified == stats.written

    def test_run_when_derived_then_reflexive_has_euler_characteristic(
            self, ws_file, info_file, outputs):
        """The K3 record gets chi = 24 and a null h22."""
        stats = run_conversion(options(ws_file, info_file, outputs,
                                       include_derived_quantities=True))
        table = pq.read_table(outputs[REFLEXIVE])
        assert table.column("euler_characteristic").to_pylist() == [24]
        assert table.column("h22").to_pylist() == [None]
        assert "euler_characteristic" not in pq.read_schema(outputs[NON_REFLEXIVE]).names
        assert stats.derived_failures == 0

    def test_run_when_derived_fails_then_row_written_with_nulls(self, tmp_path, outputs):
        """A derived-quantity failure is counted and the row is still written."""
        ws_file = write_lines(tmp_path / "ws7.txt", ["1 1 1 1 1 1 1 1"])
        info_file = write_lines(tmp_path / "info7.txt", ["1 M:99 7 N:8 7 H:1,2,3,4"])
        stats = run_conversion(options(ws_file, info_file, outputs,
                                       include_derived_quantities=True))
        assert not stats.failed
        assert stats.derived_failures == 1
        table = pq.read_table(outputs[REFLEXIVE])
        assert table.column("key").to_pylist() == [1]
        assert table.column("euler_characteristic").to_pylist() == [None]

    def test_run_when_limit_then_stops_early(self, ws_file, info_file, outputs):
        """--limit counts correlated records."""
        stats = run_conversion(options(ws_file, info_file, outputs, limit=1))
        assert stats.stop_reason == STOP_LIMIT
        assert stats.correlated == 1
        assert keys(outputs[NON_IP]) == [1]
        assert keys(outputs[REFLEXIVE]) == []
        assert not stats.failed

    def test_run_when_limit_zero_then_writes_empty_partitions(self, ws_file, info_file, outputs):
        """A zero limit produces valid empty files."""
        stats = run_conversion(options(ws_file, info_file, outputs, limit=0))
        assert stats.stop_reason == STOP_LIMIT
        assert stats.correlated == 0
        assert all(keys(p) == [] for p in outputs.values())

    def test_run_when_resumed_from_prior_output_then_writes_nothing_new(
            self, ws_file, info_file, outputs, tmp_path):
        """A second run against the first run's files skips every record."""
        run_conversion(options(ws_file, info_file, outputs))
        second = {c: tmp_path / "second" / p.name for c, p in outputs.items()}

        stats = run_conversion(options(ws_file, info_file, second,
                                       parquet_in=list(outputs.values())))

        assert stats.skipped_resume == 3
        assert stats.total_written == 0
        assert all(keys(p) == [] for p in second.values())

    def test_run_when_resumed_in_place_then_completes_without_duplicates(
            self, ws_file, info_file, outputs):
        """Resuming into the prior files keeps their rows and adds the rest."""
        run_conversion(options(ws_file, info_file, outputs, limit=1))
        stats = run_conversion(options(ws_file, info_file, outputs,
                                       parquet_in=list(outputs.values())))

        assert not stats.failed
        assert stats.skipped_resume == 1
        assert stats.carried_over[NON_IP] == 1
        assert keys(outputs[NON_IP]) == [1]
        assert keys(outputs[REFLEXIVE]) == [2]
        assert keys(outputs[NON_REFLEXIVE]) == [3]

    def test_run_when_prior_file_is_other_partition_output_then_aborts(
            self, ws_file, info_file, outputs):
        """A prior file may only be resumed in place by its own partition."""
        run_conversion(options(ws_file, info_file, outputs))
        swapped = dict(outputs)
        swapped[REFLEXIVE], swapped[NON_IP] = outputs[NON_IP], outputs[REFLEXIVE]

        stats = run_conversion(options(ws_file, info_file, swapped,
                                       parquet_in=[outputs[NON_IP]]))

        assert stats.failed
        assert "ResumeMismatch" in stats.fatal_error
        assert keys(outputs[NON_IP]) == [1]

    def test_run_when_duplicate_key_then_aborts_after_flushing(self, tmp_path, outputs):
        """Records before a duplicate are written; nothing after it."""
        ws_file = write_lines(tmp_path / "dup_ws.txt", ["1 1 1 1", "2 1 1 1", "2 1 1 1", "3 1 1 1"])
        info_file = write_lines(tmp_path / "dup_info.txt", ["1 -", "2 -", "3 -"])

        stats = run_conversion(options(ws_file, info_file, outputs))

        assert stats.failed
        assert stats.stop_reason == STOP_ABORTED
        assert stats.duplicates == 1
        assert "DuplicateKey" in stats.fatal_error
        assert keys(outputs[NON_IP]) == [1, 2]

    def test_run_when_malformed_then_counted(self, tmp_path, info_file, outputs):
        """Malformed lines are skipped and counted."""
        ws_file = write_lines(tmp_path / "bad_ws.txt", ["1 1 1 1", "2 1 x 1", "3 1 1 2"])
        stats = run_conversion(options(ws_file, info_file, outputs))
        assert not stats.failed
        assert stats.malformed == 1
        assert stats.gaps == 0
        assert keys(outputs[NON_REFLEXIVE]) == [3]

    def test_run_when_malformed_beyond_tolerance_then_aborts(self, tmp_path, info_file, outputs):
        """Exceeding --max-malformed is fatal."""
        ws_file = write_lines(tmp_path / "bad_ws.txt", ["1 1 1 1", "2 1 x 1", "3 1 1 2"])
        stats = run_conversion(options(ws_file, info_file, outputs, max_malformed=0))
        assert stats.failed
        assert "TooManyMalformedRecords" in stats.fatal_error
        assert keys(outputs[NON_IP]) == [1]

    def test_run_when_unsorted_polytope_info_then_indexed_join(self, ws_file, tmp_path, outputs):
        """--unsorted-polytope-info accepts polytope info in any order."""
        info_file = write_lines(tmp_path / "shuffled.txt", list(reversed(INFO_LINES)))
        stats = run_conversion(options(ws_file, info_file, outputs, unsorted_polytope_info=True))
        assert not stats.failed
        assert stats.written == {NON_IP: 1, NON_REFLEXIVE: 1, REFLEXIVE: 1}

    def test_run_when_unsorted_polytope_info_without_flag_then_aborts(
            self, ws_file, tmp_path, outputs):
        """The merge-join refuses unsorted polytope info."""
        info_file = write_lines(tmp_path / "shuffled.txt", list(reversed(INFO_LINES)))
        stats = run_conversion(options(ws_file, info_file, outputs))
        assert stats.failed
        assert "OutOfOrderKey" in stats.fatal_error

    def test_run_when_gzip_inputs_then_same_result(self, tmp_path, outputs):
        """Compressed inputs convert like plain text."""
        ws_gz = tmp_path / "ws.txt.gz"
        info_gz = tmp_path / "info.txt.gz"
        with gzip.open(ws_gz, "wt") as f:
            f.write("\n".join(WS_LINES) + "\n")
        with gzip.open(info_gz, "wt") as f:
            f.write("\n".join(INFO_LINES) + "\n")

        stats = run_conversion(options(ws_gz, info_gz, outputs))
        assert stats.written == {NON_IP: 1, NON_REFLEXIVE: 1, REFLEXIVE: 1}

    def test_run_when_invalid_utf8_then_line_counted_as_malformed(self, tmp_path, info_file, outputs):
        """A line with undecodable bytes is skipped; the run still succeeds."""
        ws_file = tmp_path / "latin1_ws.txt"
        ws_file.write_bytes(b"1 1 1 1\n2 1 \xff 1\n3 1 1 2\n")
        stats = run_conversion(options(ws_file, info_file, outputs))
        assert not stats.failed
        assert stats.malformed == 1
        assert keys(outputs[NON_IP]) == [1]
        assert keys(outputs[NON_REFLEXIVE]) == [3]

    def test_run_when_gzip_truncated_then_aborts_with_summary(self, tmp_path, outputs):
        """A cut-off .gz input ends the run as failed instead of raising."""
        n = 5000
        packed = gzip.compress("".join(f"{k} 1 1 1\n" for k in range(1, n + 1)).encode())
        ws_gz = tmp_path / "ws.txt.gz"
        ws_gz.write_bytes(packed[: len(packed) // 2])
        info_file = write_lines(tmp_path / "info.txt", [f"{k} -" for k in range(1, n + 1)])

        stats = run_conversion(options(ws_gz, info_file, outputs))

        assert stats.failed
        assert stats.stop_reason == STOP_ABORTED
        assert "FATAL" in "\n".join(stats.summary_lines())
        assert keys(outputs[NON_IP]) == list(range(1, stats.correlated + 1))

    def test_run_when_input_missing_then_aborts(self, tmp_path, info_file, outputs):
        """I/O errors end the run as failed, not with a traceback."""
        stats = run_conversion(options(tmp_path / "missing.txt", info_file, outputs))
        assert stats.failed
        assert "FileNotFoundError" in stats.fatal_error

    def test_summary_lists_partitions_and_stop_reason(self, ws_file, info_file, outputs):
        """The summary covers every counter and the stop reason."""
        stats = run_conversion(options(ws_file, info_file, outputs, limit=2))
        text = "\n".join(stats.summary_lines())
        assert "correlation gaps" in text
        assert "reflexive" in text
        assert STOP_LIMIT in text


class TestMain:
    """Tests for the command-line entry point."""

    @pytest.fixture(autouse=True)
    def no_data_root(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("IPWS_ROOT", raising=False)
        monkeypatch.setattr("ipws_config.COMMON_MOUNT_POINTS", [])

    def test_main_when_success_then_exit_zero(self, ws_file, info_file, tmp_path, capsys):
        """A clean run prints a summary and exits 0."""
        out = tmp_path / "out"
        code = main(["--ws-in", str(ws_file), "--polytope-info-in", str(info_file),
                     "--output-dir", str(out), "-i", "--index", "1"])
        assert code == 0
        assert "=== Conversion Summary ===" in capsys.readouterr().out
        schema = pq.read_schema(out / "reflexive.parquet")
        assert schema.metadata[b"index"] == b"1"
        assert "h22" in schema.names

    def test_main_when_duplicate_then_exit_one(self, tmp_path, capsys):
        """A fatal error makes the process fail and still prints the summary."""
        ws_file = write_lines(tmp_path / "ws.txt", ["1 1 1 1", "1 1 1 1"])
        info_file = write_lines(tmp_path / "info.txt", ["1 -"])
        code = main(["--ws-in", str(ws_file), "--polytope-info-in", str(info_file),
                     "--output-dir", str(tmp_path / "out")])
        assert code == 1
        out = capsys.readouterr().out
        assert "=== Conversion Summary ===" in out
        assert "aborted" in out
        assert "FATAL: DuplicateKey" in out

    def test_main_explicit_output_flag_wins(self, ws_file, info_file, tmp_path):
        """A per-partition flag overrides --output-dir for that partition."""
        special = tmp_path / "special" / "refl.parquet"
        main(["--ws-in", str(ws_file), "--polytope-info-in", str(info_file),
              "--output-dir", str(tmp_path / "out"), "--parquet-reflexive-out", str(special),
              "--row-group-size", "1"])
        assert keys(special) == [2]
        assert not (tmp_path / "out" / "reflexive.parquet").exists()

    def test_main_when_row_group_size_zero_then_usage_error(self, ws_file, info_file, tmp_path):
        """An explicit zero row-group size is rejected, not replaced by the default."""
        with pytest.raises(SystemExit) as exc:
            main(["--ws-in", str(ws_file), "--polytope-info-in", str(info_file),
                  "--output-dir", str(tmp_path / "out"), "--row-group-size", "0"])
        assert exc.value.code == 2
        assert not (tmp_path / "out").exists()

    def test_main_when_no_outputs_then_usage_error(self, ws_file, info_file):
        """Without a data root every output path must be given."""
        with pytest.raises(SystemExit) as exc:
            main(["--ws-in", str(ws_file), "--polytope-info-in", str(info_file)])
        assert exc.value.code == 2

    def test_main_status_reads_footers(self, ws_file, info_file, tmp_path, capsys):
        """--status reports row counts of existing files."""
        out = tmp_path / "out"
        main(["--ws-in", str(ws_file), "--polytope-info-in", str(info_file),
              "--output-dir", str(out)])
        capsys.readouterr()

        assert main(["--status", "--output-dir", str(out)]) == 0
        text = capsys.readouterr().out
        assert "non_reflexive" in text
        assert "missing" not in text
