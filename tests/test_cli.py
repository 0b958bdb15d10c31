from labgate.cli import main
from labgate.peers.deeplink import parse_deep_link


def test_distance_command(capsys):
    assert main(["distance", "12.9716", "77.5946", "12.9716", "77.5946"]) == 0
    assert "0.00 m (0 meters)" in capsys.readouterr().out

    assert main(["distance", "95", "0", "0", "0"]) == 2


def test_check_command_uses_registry_file(monkeypatch, tmp_path, capsys):
    path = tmp_path / "geofences.yaml"
    path.write_text(
        "admin@lab.example:\n  centerLatitude: 12.9716\n  centerLongitude: 77.5946\n  radiusMeters: 100\n",
        encoding="utf-8",
    )
    from labgate.config.settings import get_settings

    settings = get_settings()
    geofence = settings.geofence.model_copy(update={"registry_path": str(path), "registry_url": None})
    monkeypatch.setattr("labgate.cli.get_settings", lambda: settings.model_copy(update={"geofence": geofence}))

    assert main(["check", "--account", "admin@lab.example", "--lat", "12.9716", "--lon", "77.5946", "--accuracy", "4"]) == 0
    out = capsys.readouterr().out
    assert '"withinRadius": true' in out
    assert '"accuracyLevel": "excellent"' in out

    assert main(["check", "--account", "admin@lab.example", "--lat", "12.9816", "--lon", "77.5946"]) == 1
    assert main(["check", "--account", "ghost@lab.example", "--lat", "12.9716", "--lon", "77.5946"]) == 2


def test_pair_link_command(capsys):
    assert main(["pair-link", "--user", "tech@lab.example", "--mode", "registration"]) == 0
    pairing = parse_deep_link(capsys.readouterr().out.strip())
    assert pairing.user_identifier == "tech@lab.example"
    assert pairing.mode.value == "registration"
    assert pairing.require_location is True


def test_check_command_rejects_invalid_input(capsys):
    assert main(["check", "--account", "admin@lab.example", "--lat", "91", "--lon", "77.5946"]) == 2
    assert "Invalid coordinate" in capsys.readouterr().out

    assert main(["check", "--account", "admin@lab.example", "--lat", "12.9716", "--lon", "181"]) == 2
    assert main(["check", "--account", "admin@lab.example", "--lat", "12.9716", "--lon", "77.5", "--accuracy", "-1"]) == 2
