"""Unit tests for the FTP remote store and its retry policy."""

import ftplib
from unittest.mock import MagicMock, patch

import pytest

from reelix.core.errors import ConfigurationError, RemoteStoreError, TransientNetworkError
from reelix.core.remote_store import FtpFileStore, parse_host, retry_network_operation
from reelix.models import AppConfig


@pytest.fixture
def no_sleep():
    with patch("reelix.core.remote_store.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def mock_ftp():
    """Patch ftplib.FTP; every store connection gets the same mock."""
    ftp = MagicMock(spec=ftplib.FTP)
    with patch("reelix.core.remote_store.ftplib.FTP", return_value=ftp) as factory:
        ftp.factory = factory
        yield ftp


class TestParseHost:
    def test_host_only(self):
        assert parse_host("nas.local") == ("nas.local", 21)

    def test_host_and_port(self):
        assert parse_host(" 192.168.1.20:2121 ") == ("192.168.1.20", 2121)

    def test_non_numeric_port_is_kept_in_host(self):
        assert parse_host("nas:ftp") == ("nas:ftp", 21)


class TestRetryNetworkOperation:
    def test_returns_after_transient_failures(self, no_sleep):
        calls = []

        @retry_network_operation(max_retries=3, base_delay=1.0)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionResetError("reset by peer")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [1.0, 2.0]

    def test_gives_up_with_transient_network_error(self, no_sleep):
        @retry_network_operation(max_retries=2, base_delay=0.5)
        def always_down():
            raise ftplib.error_temp("421 Service not available")

        with pytest.raises(TransientNetworkError) as exc:
            always_down()
        assert isinstance(exc.value.__cause__, ftplib.error_temp)
        assert no_sleep.call_count == 2

    def test_backoff_is_capped(self, no_sleep):
        @retry_network_operation(max_retries=7, base_delay=4.0)
        def always_down():
            raise TimeoutError("timed out")

        with pytest.raises(TransientNetworkError):
            always_down()
        assert max(c.args[0] for c in no_sleep.call_args_list) == 30

    def test_permanent_errors_are_not_retried(self, no_sleep):
        @retry_network_operation(max_retries=3)
        def refused():
            raise RemoteStoreError("550 Permission denied")

        with pytest.raises(RemoteStoreError):
            refused()
        no_sleep.assert_not_called()


class TestFtpFileStore:
    def test_from_config_requires_host(self):
        with pytest.raises(ConfigurationError):
            FtpFileStore.from_config(AppConfig())

    def test_from_config(self):
        store = FtpFileStore.from_config(AppConfig(ftp_host="nas:2121", ftp_user="rip", ftp_pass="pw"), timeout=5)
        assert (store.host, store.port) == ("nas", 2121)

    def test_connects_lazily_and_once(self, mock_ftp):
        store = FtpFileStore("nas", "rip", "pw", timeout=5)
        mock_ftp.factory.assert_not_called()

        mock_ftp.nlst.return_value = []
        store.list_names("/a")
        store.list_names("/b")

        mock_ftp.factory.assert_called_once_with(timeout=5)
        mock_ftp.connect.assert_called_once_with("nas", 21)
        mock_ftp.login.assert_called_once_with("rip", "pw")

    def test_list_names_returns_sorted_base_names(self, mock_ftp):
        mock_ftp.nlst.return_value = ["/tv/Season 01/b.mkv", "/tv/Season 01/a.mkv", "."]
        store = FtpFileStore("nas", "rip", "pw")
        assert store.list_names("/tv/Season 01") == ["a.mkv", "b.mkv"]

    def test_missing_directory_lists_empty(self, mock_ftp):
        mock_ftp.nlst.side_effect = ftplib.error_perm("550 No such file or directory")
        assert FtpFileStore("nas", "rip", "pw").list_names("/nowhere") == []

    def test_other_permanent_listing_error(self, mock_ftp):
        mock_ftp.nlst.side_effect = ftplib.error_perm("530 Not logged in")
        with pytest.raises(RemoteStoreError):
            FtpFileStore("nas", "rip", "pw").list_names("/tv")

    def test_login_failure_is_permanent(self, mock_ftp, no_sleep):
        mock_ftp.login.side_effect = ftplib.error_perm("530 Login incorrect")
        with pytest.raises(RemoteStoreError):
            FtpFileStore("nas", "rip", "bad").check()
        no_sleep.assert_not_called()

    def test_rename_failure_is_permanent(self, mock_ftp):
        mock_ftp.rename.side_effect = ftplib.error_perm("550 Rename failed")
        with pytest.raises(RemoteStoreError):
            FtpFileStore("nas", "rip", "pw").rename("/a.mkv", "/b.mkv")

    def test_rename_reconnects_after_dropped_connection(self, mock_ftp, no_sleep):
        mock_ftp.rename.side_effect = [ConnectionResetError("reset"), None]
        store = FtpFileStore("nas", "rip", "pw")

        store.rename("/a.mkv", "/b.mkv")

        assert mock_ftp.rename.call_count == 2
        assert mock_ftp.connect.call_count == 2
        no_sleep.assert_called_once()

    def test_unreachable_server(self, mock_ftp, no_sleep):
        mock_ftp.connect.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(TransientNetworkError):
            FtpFileStore("nas", "rip", "pw").check()

    def test_context_manager_closes_connection(self, mock_ftp):
        mock_ftp.pwd.return_value = "/"
        with FtpFileStore("nas", "rip", "pw") as store:
            assert store.check() == "/"
        mock_ftp.quit.assert_called_once()

    def test_failed_login_closes_socket(self, mock_ftp):
        mock_ftp.login.side_effect = ftplib.error_perm("530 Login incorrect")
        with pytest.raises(RemoteStoreError):
            FtpFileStore("nas", "rip", "bad").check()
        mock_ftp.close.assert_called_once()

    def test_rename_retry_after_server_already_renamed(self, mock_ftp, no_sleep):
        # RNTO went through but the reply was lost with the connection
        mock_ftp.rename.side_effect = [ConnectionResetError("reset"), ftplib.error_perm("550 /a.mkv: No such file")]
        sizes = {"/b.mkv": 1024}

        def size(path):
            if path not in sizes:
                raise ftplib.error_perm(f"550 {path}: No such file")
            return sizes[path]

        mock_ftp.size.side_effect = size
        store = FtpFileStore("nas", "rip", "pw")

        store.rename("/a.mkv", "/b.mkv")

        assert mock_ftp.rename.call_count == 2

    def test_rename_550_with_source_present_is_an_error(self, mock_ftp):
        mock_ftp.rename.side_effect = ftplib.error_perm("550 Permission denied")
        mock_ftp.size.return_value = 1024
        with pytest.raises(RemoteStoreError):
            FtpFileStore("nas", "rip", "pw").rename("/a.mkv", "/b.mkv")

    def test_size_of_missing_file(self, mock_ftp):
        mock_ftp.size.side_effect = ftplib.error_perm("550 No such file")
        assert FtpFileStore("nas", "rip", "pw").size("/nope.mkv") is None


class TestUpload:
    def test_creates_directories_and_stores_file(self, mock_ftp, tmp_path):
        local = tmp_path / "Blade Runner (1982).mkv"
        local.write_bytes(b"x" * 10)

        def storbinary(cmd, fh, blocksize, callback):
            callback(fh.read())
            return "226 Transfer complete"

        mock_ftp.storbinary.side_effect = storbinary
        mock_ftp.mkd.side_effect = [ftplib.error_perm("550 /movies: File exists"), "/movies/Blade Runner (1982)"]
        seen = []

        FtpFileStore("nas", "rip", "pw").upload(
            local, "/movies/Blade Runner (1982)/Blade Runner (1982).mkv", progress=seen.append
        )

        assert [c.args[0] for c in mock_ftp.mkd.call_args_list] == ["/movies", "/movies/Blade Runner (1982)"]
        assert mock_ftp.storbinary.call_args.args[0] == "STOR /movies/Blade Runner (1982)/Blade Runner (1982).mkv"
        assert seen == [10]

    def test_refused_store_is_permanent(self, mock_ftp, tmp_path, no_sleep):
        local = tmp_path / "a.mkv"
        local.write_bytes(b"x")
        mock_ftp.storbinary.side_effect = ftplib.error_perm("553 Could not create file")

        with pytest.raises(RemoteStoreError):
            FtpFileStore("nas", "rip", "pw").upload(local, "/tv/a.mkv")
        no_sleep.assert_not_called()

    def test_dropped_transfer_is_retried(self, mock_ftp, tmp_path, no_sleep):
        local = tmp_path / "a.mkv"
        local.write_bytes(b"x")
        mock_ftp.storbinary.side_effect = [ConnectionResetError("reset"), "226 Transfer complete"]

        FtpFileStore("nas", "rip", "pw").upload(local, "/tv/a.mkv")

        assert mock_ftp.storbinary.call_count == 2
        assert mock_ftp.connect.call_count == 2

    def test_missing_local_file(self, mock_ftp, tmp_path):
        with pytest.raises(FileNotFoundError):
            FtpFileStore("nas", "rip", "pw").upload(tmp_path / "gone.mkv", "/tv/gone.mkv")
        mock_ftp.factory.assert_not_called()
