from unittest.mock import patch

from errors import LoggedOutError
from main import DEMO_MESSAGES, main, print_pairing_code, print_qr


@patch("main.time.sleep")
@patch("main.WhatsappClient")
def test_main_sends_demo_messages(mock_client_class, mock_sleep, tmp_path, monkeypatch):
    monkeypatch.delenv("WHATSAPP_AUTH_PATH", raising=False)
    client = mock_client_class.return_value

    exit_code = main(["94771234567", "--auth-path", str(tmp_path / "auth"), "--config", str(tmp_path / "none.yaml"), "--delay", "0"])

    assert exit_code == 0
    config = mock_client_class.call_args[0][0]
    assert config.auth_path == str(tmp_path / "auth")
    client.initialize.assert_called_once()
    sent = [call[0] for call in client.send_template_message.call_args_list]
    assert sent == [("94771234567", name, data) for name, data in DEMO_MESSAGES]
    assert mock_sleep.call_count == len(DEMO_MESSAGES) - 1
    client.close.assert_called_once()


@patch("main.WhatsappClient")
def test_main_reports_client_errors(mock_client_class, tmp_path, capsys):
    client = mock_client_class.return_value
    client.initialize.side_effect = LoggedOutError("auth")

    exit_code = main(["94771234567", "--config", str(tmp_path / "none.yaml"), "--pairing-code", "--phone-number", "94770000000"])

    assert exit_code == 1
    config = mock_client_class.call_args[0][0]
    assert config.use_pairing_code is True
    assert "Logged out" in capsys.readouterr().err
    client.send_template_message.assert_not_called()
    client.close.assert_called_once()


def test_print_qr(capsys):
    print_qr("2@QRDATA")

    output = capsys.readouterr().out
    assert "Scan this QR code" in output
    assert len(output.splitlines()) > 10


def test_print_pairing_code(capsys):
    print_pairing_code({"code": "ABCD1234", "phone_number": "94770000000"})

    assert "ABCD1234" in capsys.readouterr().out
