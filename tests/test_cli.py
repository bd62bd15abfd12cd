"""Tests for argument parsing and the command-line entry point."""

import json
import signal

import jwt
import pytest

import gh_apptoken

API = "https://api.github.com"


def run_main(argv):
    """Run main() and return its exit status, including fatal_error exits."""
    try:
        return gh_apptoken.main(argv)
    except SystemExit as e:
        return e.code


class TestParseArguments:
    def test_underscore_and_hyphen_spellings(self):
        args = gh_apptoken.parse_arguments(
            ["generate", "--base64-key", "abc", "--app-id", "1", "--installation-id", "2"]
        )
        assert (args.base64_key, args.app_id, args.installation_id) == ("abc", "1", "2")

        args = gh_apptoken.parse_arguments(
            ["generate", "--base64_key", "abc", "--app_id", "1", "--installation_id", "2"]
        )
        assert (args.base64_key, args.app_id, args.installation_id) == ("abc", "1", "2")

    def test_defaults(self):
        args = gh_apptoken.parse_arguments(["installations", "--key", "k.pem", "--app_id", "1"])

        assert args.hostname == "api.github.com"
        assert args.duration == 10
        assert not args.interactive

    def test_quiet_and_debug_conflict(self):
        with pytest.raises(SystemExit):
            gh_apptoken.parse_arguments(["revoke", "--token", "t", "--quiet", "--debug"])

    def test_jwt_and_installation_id_conflict(self):
        with pytest.raises(SystemExit):
            gh_apptoken.parse_arguments(["generate", "--key", "k", "--app_id", "1", "--jwt", "--installation_id", "3"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            gh_apptoken.parse_arguments([])


class TestGenerateCommand:
    def test_prints_token_json(self, github, real_pem_file, capsys):
        github.add('GET', f"{API}/app/installations", body=[{"id": 42}])
        github.add('POST', f"{API}/app/installations/42/access_tokens", status=201,
                   body={"token": "ghs_abc", "expires_at": "2024-01-01T00:00:00Z"})

        status = run_main(["generate", "--key", str(real_pem_file), "--app_id", "123", "--duration", "5"])

        assert status == 0
        assert json.loads(capsys.readouterr().out) == {"token": "ghs_abc", "expires_at": "2024-01-01T00:00:00Z"}

    @pytest.mark.parametrize("output_format, expected", [
        ("text", "ghs_abc\n"),
        ("env", "export GITHUB_TOKEN=ghs_abc\n"),
        ("header", "Authorization: token ghs_abc\n"),
    ])
    def test_output_formats(self, github, real_pem_file, capsys, output_format, expected):
        github.add('POST', f"{API}/app/installations/9/access_tokens", status=201,
                   body={"token": "ghs_abc", "expires_at": "2024-01-01T00:00:00Z"})

        run_main(["generate", "--key", str(real_pem_file), "--app_id", "1", "--installation_id", "9",
                  "--output-format", output_format, "--quiet"])

        captured = capsys.readouterr()
        assert captured.out == expected
        assert captured.err == ""

    def test_jwt_only(self, github, real_pem_file, rsa_private_key, capsys):
        status = run_main(["generate", "--jwt", "--key", str(real_pem_file), "--app_id", "123",
                           "--output-format", "text", "--quiet"])

        token = capsys.readouterr().out.strip()
        assert status == 0
        assert jwt.decode(token, rsa_private_key.public_key(), algorithms=["RS256"])['iss'] == "123"
        assert github.requests == []

    def test_dry_run_makes_no_requests(self, github, real_pem_file, capsys):
        status = run_main(["generate", "--dry-run", "--key", str(real_pem_file), "--app_id", "123"])

        err = capsys.readouterr().err
        assert status == 0
        assert "GET" in err and "POST" in err
        assert f"{API}/app/installations/{{first installation id}}/access_tokens" in err
        assert github.requests == []

    def test_duration_too_long(self, github, real_pem_file, capsys):
        status = run_main(["generate", "--key", str(real_pem_file), "--app_id", "1", "--duration", "11"])

        assert status == 1
        assert "Error: duration cannot be more than 10 minutes" in capsys.readouterr().err

    def test_missing_key(self, github, capsys):
        status = run_main(["generate", "--app_id", "1"])

        assert status == 1
        assert "key or base64_key required" in capsys.readouterr().err

    def test_dependency_failure_names_step(self, github, real_pem_file, capsys):
        github.add('GET', f"{API}/app/installations", status=401, body={"message": "Bad credentials"})

        status = run_main(["generate", "--key", str(real_pem_file), "--app_id", "1"])

        assert status == 1
        assert "Error: listing: HTTP 401 error from GitHub API: Bad credentials" in capsys.readouterr().err


class TestInstallationsCommand:
    def test_prints_list(self, github, real_pem_file, capsys):
        github.add('GET', f"{API}/app/installations", body=[{"id": 1}, {"id": 2}])

        run_main(["installations", "--key", str(real_pem_file), "--app_id", "1", "--quiet"])

        assert json.loads(capsys.readouterr().out) == [{"id": 1}, {"id": 2}]

    def test_ids_only(self, github, real_pem_file, capsys):
        github.add('GET', f"{API}/app/installations", body=[{"id": 1}, {"id": 2}])

        run_main(["installations", "--key", str(real_pem_file), "--app_id", "1", "--ids-only"])

        assert capsys.readouterr().out == "1\n2\n"

    def test_ids_only_skips_entries_without_id(self, github, real_pem_file, capsys):
        github.add('GET', f"{API}/app/installations", body=[{"id": 1}, "junk", {"account": {}}, {"id": 3}])

        status = run_main(["installations", "--key", str(real_pem_file), "--app_id", "1", "--ids-only"])

        assert status == 0
        assert capsys.readouterr().out == "1\n3\n"


class TestRevokeCommand:
    def test_success(self, github, capsys):
        github.add('DELETE', f"{API}/installation/token", status=204)

        assert run_main(["revoke", "--token", "ghs_abc"]) == 0
        assert capsys.readouterr().out == "Successfully revoked installation token.\n"

    def test_rejection_does_not_fail_the_process(self, github, capsys):
        github.add('DELETE', f"{API}/installation/token", status=404, body={"message": "Not Found"})

        assert run_main(["revoke", "--token", "ghs_abc"]) == 0
        assert "HTTP status code: 404" in capsys.readouterr().out

    def test_missing_token(self, github, capsys):
        assert run_main(["revoke"]) == 1
        assert "token is required" in capsys.readouterr().err

    def test_enterprise_dry_run(self, github, capsys):
        run_main(["revoke", "--token", "ghs_1234567890", "--hostname", "ghe.example.com", "--dry-run"])

        err = capsys.readouterr().err
        assert "https://ghe.example.com/api/v3/installation/token" in err
        assert "ghs_1234567890" not in err
        assert github.requests == []


class TestInteractive:
    def test_prompts_for_missing_inputs(self, monkeypatch, pem_file):
        answers = iter(["123", str(pem_file)])
        prompts = []

        def fake_prompt(prompt_text, completer=None, validator_func=None):
            prompts.append(prompt_text)
            answer = next(answers)
            validator_func(answer)
            return answer

        monkeypatch.setattr(gh_apptoken, 'prompt_for_input', fake_prompt)
        args = gh_apptoken.parse_arguments(["generate", "--interactive"])

        gh_apptoken.collect_interactive_inputs(args)

        assert (args.app_id, args.key) == ("123", str(pem_file))
        assert prompts == ["Enter GitHub App ID: ", "Enter path to private key PEM file: "]

    def test_no_prompt_without_flag(self, monkeypatch):
        monkeypatch.setattr(gh_apptoken, 'prompt_for_input', pytest.fail)
        args = gh_apptoken.parse_arguments(["generate"])

        gh_apptoken.collect_interactive_inputs(args)

        assert args.app_id is None


class TestRun:
    def test_sigterm_unwinds_as_system_exit(self):
        with pytest.raises(SystemExit) as exc:
            gh_apptoken._exit_on_sigterm(signal.SIGTERM, None)

        assert exc.value.code == 128 + signal.SIGTERM

    def test_keyboard_interrupt_exits_130(self, monkeypatch, capsys):
        def interrupted():
            raise KeyboardInterrupt

        monkeypatch.setattr(gh_apptoken, 'main', interrupted)
        monkeypatch.setattr(gh_apptoken.signal, 'signal', lambda *args: None)

        with pytest.raises(SystemExit) as exc:
            gh_apptoken.run()

        assert exc.value.code == 130
        assert "Interrupted by user" in capsys.readouterr().err
