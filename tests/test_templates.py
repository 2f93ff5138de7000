"""Test rendered artifact text."""

import dataclasses

import pytest

from esc_deploy.config import SslMode
from esc_deploy.renderer import render_text
from esc_deploy.templates import (
    SECRET_KEY_PLACEHOLDER,
    TemplateId,
    render_fail2ban_jail,
    render_nginx_site,
    render_sshd_config,
)


class TestScenario:
    """example.com, Let's Encrypt, security on, SSH on 2222, root and passwords off."""

    def test_sshd_config(self, scenario_config):
        text = render_sshd_config(scenario_config)

        assert "Port 2222\n" in text
        assert "PermitRootLogin no\n" in text
        assert "PasswordAuthentication no\n" in text
        assert "Banner /etc/ssh/sshd_banner" in text
        assert "AllowUsers" not in text

    def test_nginx_server_name(self, scenario_config):
        text = render_nginx_site(scenario_config)

        assert "server_name example.com www.example.com;" in text
        assert "/etc/letsencrypt/live/example.com/fullchain.pem" in text

    def test_fail2ban_ssh_port(self, scenario_config):
        text = render_fail2ban_jail(scenario_config)
        sshd = text.split("[sshd]\n", 1)[1].split("\n\n", 1)[0]

        assert "port = 2222" in sshd


class TestDeterminism:
    """Identical inputs yield byte-identical output."""

    @pytest.mark.parametrize("template_id", list(TemplateId))
    def test_repeat_render(self, scenario_config, template_id):
        first = render_text(template_id, scenario_config)
        second = render_text(template_id, dataclasses.replace(scenario_config))

        assert first == second


class TestEnvFile:
    def test_default_secret_is_placeholder(self, scenario_config):
        text = render_text(TemplateId.ENV_FILE, scenario_config)
        assert f"SECRET_KEY={SECRET_KEY_PLACEHOLDER}\n" in text

    def test_hosts_and_sections(self, scenario_config):
        text = render_text(TemplateId.ENV_FILE, scenario_config, secret_key="abc")

        assert "SECRET_KEY=abc\n" in text
        assert "ALLOWED_HOSTS=localhost,example.com,www.example.com\n" in text
        assert "CSRF_ORIGINS=https://example.com,https://www.example.com\n" in text
        for section in ("# Django Core Settings", "# M-Pesa Payment Configuration", "# reCAPTCHA"):
            assert section in text
        assert sum(1 for line in text.splitlines() if "=" in line and not line.startswith("#")) >= 40


class TestNginxVariants:
    def test_secured_has_rate_limits(self, scenario_config):
        text = render_nginx_site(scenario_config)

        assert "zone=general:10m rate=10r/s" in text
        assert "zone=api:10m rate=30r/m" in text
        assert "zone=auth:10m rate=5r/m" in text
        assert "limit_req_status 429;" in text
        assert "server 127.0.0.1:8000;" in text
        assert "return 301 https://$host$request_uri;" in text

    def test_secured_without_ssl_serves_port_80(self, scenario_config):
        config = dataclasses.replace(scenario_config, ssl_mode=SslMode.NONE)
        text = render_nginx_site(config)

        assert "limit_req_zone" in text
        assert "listen 443" not in text
        assert "return 301" not in text

    def test_ssl_without_security(self, scenario_config):
        config = dataclasses.replace(
            scenario_config, security_enabled=False, ssl_mode=SslMode.SELF_SIGNED
        )
        text = render_nginx_site(config)

        assert "limit_req" not in text
        assert "ssl_certificate /etc/nginx/ssl/selfsigned.crt;" in text

    def test_http_only(self, scenario_config):
        config = dataclasses.replace(
            scenario_config, security_enabled=False, ssl_mode=SslMode.NONE
        )
        text = render_nginx_site(config)

        assert "listen 80;" in text
        assert "ssl_certificate" not in text
        assert "limit_req" not in text


class TestFail2Ban:
    def test_standard_policy_has_no_ddos_jail(self, scenario_config):
        config = dataclasses.replace(scenario_config, fail2ban_aggressive=False)
        text = render_fail2ban_jail(config)

        assert "[sshd-ddos]" not in text
        assert "bantime = 86400" in text

    def test_aggressive_policy(self, scenario_config):
        text = render_fail2ban_jail(scenario_config)

        assert "[sshd-ddos]" in text
        assert "bantime = 2592000" in text
        assert "destemail = admin@example.com" in text


class TestSshd:
    def test_password_auth_and_root_login_enabled(self, scenario_config):
        config = dataclasses.replace(
            scenario_config, disable_root_login="no", password_auth_enabled=True
        )
        text = render_sshd_config(config)

        assert "PermitRootLogin yes\n" in text
        assert "PasswordAuthentication yes\n" in text

    def test_whitelist_appendix(self, scenario_config):
        config = dataclasses.replace(
            scenario_config, admin_ip_whitelist=["198.51.100.7", "203.0.113.0/24"]
        )
        text = render_sshd_config(config)

        assert text.endswith(
            "# Admin IP Whitelist\nAllowUsers *@198.51.100.7 *@203.0.113.0/24\n"
        )


class TestScripts:
    def test_logs_defaults_to_all_services(self, scenario_config):
        text = render_text(TemplateId.LOGS_SCRIPT, scenario_config)

        assert 'SERVICE="${1:-all}"' in text
        assert "docker compose -f compose.prod.yaml logs -f" in text

    def test_systemd_unit_references_app_dir(self, scenario_config):
        text = render_text(TemplateId.SYSTEMD_UNIT, scenario_config, owner="ubuntu")

        assert "WorkingDirectory=/opt/apps/esc\n" in text
        assert "ExecStart=/usr/bin/docker compose -f compose.prod.yaml up -d" in text
        assert "User=ubuntu\n" in text
