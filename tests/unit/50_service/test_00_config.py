# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for INI and environment configuration loading."""

from campaign_dispatch.config_loader import DispatchConfig, load_config


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_gives_defaults(self, tmp_path):
        """Every key has a default when neither file nor environment set it."""
        config = load_config(tmp_path / "absent.ini", env={})
        assert config.port == 8000
        assert config.mx_check is True
        assert config.concurrency == 4
        assert config.api_token is None
        assert config.smtp.configured is False

    def test_ini_sections(self, tmp_path):
        """Values are read from their INI sections."""
        path = tmp_path / "config.ini"
        path.write_text(
            "[storage]\n"
            "db_path = /srv/dispatch.db\n"
            "[server]\n"
            "port = 9100\n"
            "api_token = tok\n"
            "[queue]\n"
            "time_budget_ms = 20000\n"
            "[delivery]\n"
            "concurrency = 6\n"
            "mx_check = off\n"
            "limit_per_hour = 500\n"
            "[smtp]\n"
            "host = smtp.example.com\n"
            "port = 2525\n"
            "use_tls = no\n"
            "[logging]\n"
            "level = DEBUG\n"
        )

        config = load_config(path, env={})

        assert config.db_path == "/srv/dispatch.db"
        assert config.port == 9100
        assert config.api_token == "tok"
        assert config.time_budget_ms == 20000
        assert config.concurrency == 6
        assert config.mx_check is False
        assert config.rate_limits == {"limit_per_minute": 0, "limit_per_hour": 500, "limit_per_day": 0}
        assert config.smtp.host == "smtp.example.com"
        assert config.smtp.port == 2525
        assert config.smtp.use_tls is False
        assert config.log_level == "DEBUG"

    def test_environment_fallback(self, tmp_path):
        """CDS_* variables fill keys the file does not set."""
        path = tmp_path / "config.ini"
        path.write_text("[server]\nport = 9100\n")
        env = {
            "CDS_PORT": "9999",
            "CDS_API_TOKEN": "from-env",
            "CDS_MAX_ITEMS_PER_RUN": "200",
            "CDS_UNSUBSCRIBE_SECRET": "s3cret",
            "CDS_TRACKING_BASE_URL": "https://crm.example.com",
        }

        config = load_config(path, env=env)

        assert config.port == 9100
        assert config.api_token == "from-env"
        assert config.max_items_per_run == 200
        assert config.unsubscribe_secret == "s3cret"
        assert config.tracking_base_url == "https://crm.example.com"

    def test_config_path_from_environment(self, tmp_path):
        """CDS_CONFIG names the file when no path is given."""
        path = tmp_path / "other.ini"
        path.write_text("[queue]\nmax_jobs_per_run = 7\n")
        config = load_config(env={"CDS_CONFIG": str(path)})
        assert config.max_jobs_per_run == 7

    def test_blank_values_use_defaults(self, tmp_path):
        """Empty strings do not override defaults."""
        config = load_config(tmp_path / "absent.ini", env={"CDS_PORT": " ", "CDS_API_TOKEN": ""})
        assert config.port == 8000
        assert config.api_token is None


class TestDispatchConfig:
    """Tests for value clamping."""

    def test_clamps(self):
        """Concurrency and jobs per run are bounded; budgets are non-negative."""
        config = DispatchConfig(concurrency=50, max_jobs_per_run=0, max_items_per_run=-3, time_budget_ms=-1)
        assert config.concurrency == 10
        assert config.max_jobs_per_run == 1
        assert config.max_items_per_run == 1
        assert config.time_budget_ms == 0

    def test_smtp_defaults(self):
        """An SMTP block is always present."""
        assert DispatchConfig().smtp.port == 587
