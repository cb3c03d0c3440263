from models.login_attempt import LoginAttemptState
from models.user import User

from conftest import create_account, login


def test_make_admin(app):
    create_account(app, "citizen@example.com")
    runner = app.test_cli_runner()

    result = runner.invoke(args=["make-admin", "Citizen@Example.com"])
    assert "citizen@example.com promoted to ADMIN" in result.output
    with app.app_context():
        user = User.query.filter_by(email="citizen@example.com").one()
        assert "ADMIN" in {r.name for r in user.roles}

    assert "User not found" in runner.invoke(args=["make-admin", "nobody@example.com"]).output


def test_purge_expired(app, client, clock):
    create_account(app, "citizen@example.com")
    assert login(client, "citizen@example.com").status_code == 202
    for _ in range(5):
        login(client, "ghost@example.com", password="wrong password!")
    clock.advance(minutes=16)

    result = app.test_cli_runner().invoke(args=["purge-expired"])

    assert result.exit_code == 0
    assert "expired confirmations: 1" in result.output
    assert "purged attempts: 1" in result.output
    with app.app_context():
        assert LoginAttemptState.query.filter(LoginAttemptState.account_id.is_(None)).count() == 0
