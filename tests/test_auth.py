import pytest

from labsite import auth, settings


def test_password_hash_roundtrip():
    digest, salt = auth.hash_password("parola-buna")
    assert auth.verify_password("parola-buna", digest, salt)
    assert not auth.verify_password("parola-rea", digest, salt)


def test_temp_passwords_meet_minimum_length():
    password = auth.generate_temp_password()
    assert len(password) >= settings.MIN_PASSWORD_LENGTH
    assert any(c.isdigit() for c in password)


@pytest.mark.parametrize(
    "email,allowed",
    [("ana@icmpp.ro", True), ("ana@gmail.com", False), ("ana@evil-icmpp.ro", False), ("@icmpp.ro", False)],
)
def test_email_domain_restriction(email, allowed):
    assert auth.email_domain_allowed(email) is allowed


def test_new_password_rules():
    with pytest.raises(auth.AccountError, match="8"):
        auth.validate_new_password("scurt", "scurt")
    with pytest.raises(auth.AccountError, match="coincid"):
        auth.validate_new_password("parola-lunga", "parola-alta")
    auth.validate_new_password("parola-lunga", "parola-lunga")


def test_rate_limit_blocks_after_max_attempts():
    for _ in range(3):
        assert auth.enforce_rate_limit("10.0.0.1", max_attempts=3)
    assert auth.enforce_rate_limit("10.0.0.1", max_attempts=3) is False
    assert auth.enforce_rate_limit("10.0.0.2", max_attempts=3)


def test_bootstrap_creates_super_admin(conn):
    row = conn.execute(
        "SELECT u.email, r.role, r.lab_id, r.must_change_password FROM users u JOIN user_roles r ON r.user_id = u.id"
    ).fetchone()
    assert row["email"] == "admin@icmpp.ro"
    assert row["role"] == auth.SUPER_ADMIN
    assert row["lab_id"] is None
    assert row["must_change_password"] == 0


def test_create_user_validation(conn, make_lab):
    with pytest.raises(auth.AccountError, match="@icmpp.ro"):
        auth.create_user(conn, "ana@gmail.com", auth.LAB_ADMIN, None)
    with pytest.raises(auth.AccountError, match="laboratorul"):
        auth.create_user(conn, "ana@icmpp.ro", auth.LAB_ADMIN, None)
    with pytest.raises(auth.AccountError):
        auth.create_user(conn, "ana@icmpp.ro", "editor", None)
    lab_id = make_lab()
    user_id, password = auth.create_user(conn, "Ana@ICMPP.ro", auth.LAB_ADMIN, lab_id)
    assert len(password) >= settings.MIN_PASSWORD_LENGTH
    with pytest.raises(auth.AccountError, match="Există deja"):
        auth.create_user(conn, "ana@icmpp.ro", auth.LAB_ADMIN, lab_id)
    assert auth.authenticate(conn, "ana@icmpp.ro", password)["id"] == user_id


def test_super_admin_role_ignores_lab(conn, make_lab):
    lab_id = make_lab()
    user_id, _ = auth.create_user(conn, "boss@icmpp.ro", auth.SUPER_ADMIN, lab_id)
    row = conn.execute("SELECT lab_id FROM user_roles WHERE user_id = ?", (user_id,)).fetchone()
    assert row["lab_id"] is None


def test_session_context_and_permissions(conn, make_lab, make_lab_admin):
    lab_id = make_lab()
    other_lab = make_lab(name="Alt laborator")
    user_id, _email, _password = make_lab_admin(lab_id)
    token, csrf = auth.create_session(conn, user_id, "127.0.0.1", "pytest")
    conn.commit()

    ctx = auth.get_auth_context(conn, token)
    assert ctx["user"]["id"] == user_id
    assert ctx["role"] == auth.LAB_ADMIN
    assert ctx["csrf"] == csrf
    assert auth.can_edit_lab(ctx, lab_id)
    assert not auth.can_edit_lab(ctx, other_lab)
    assert not auth.is_super_admin(ctx)

    assert auth.get_auth_context(conn, "bogus")["user"] is None
    assert auth.get_auth_context(conn, None)["user"] is None


def test_reset_password_revokes_sessions(conn, make_lab, make_lab_admin):
    user_id, email, password = make_lab_admin(make_lab())
    token, _ = auth.create_session(conn, user_id, "127.0.0.1", "pytest")
    temp = auth.reset_password(conn, user_id)
    conn.commit()
    assert auth.get_auth_context(conn, token)["user"] is None
    assert auth.authenticate(conn, email, password) is None
    assert auth.authenticate(conn, email, temp) is not None
    row = conn.execute("SELECT must_change_password FROM user_roles WHERE user_id = ?", (user_id,)).fetchone()
    assert row["must_change_password"] == 1


def test_delete_user_rules(conn, make_lab, make_lab_admin):
    user_id, _email, _password = make_lab_admin(make_lab())
    with pytest.raises(auth.AccountError):
        auth.delete_user(conn, user_id, user_id)
    with pytest.raises(auth.AccountError):
        auth.delete_user(conn, 9999, user_id)
    auth.delete_user(conn, user_id, 1)
    assert conn.execute("SELECT COUNT(*) AS c FROM user_roles WHERE user_id = ?", (user_id,)).fetchone()["c"] == 0


def test_list_users_search(conn, make_lab, make_lab_admin):
    make_lab_admin(make_lab(name="Spectroscopie"))
    assert [u["email"] for u in auth.list_users(conn, "spectro")] == ["lab.admin@icmpp.ro"]
    assert len(auth.list_users(conn)) == 2


def test_set_password_keeps_only_the_current_session(conn, make_lab, make_lab_admin):
    user_id, email, _password = make_lab_admin(make_lab())
    current, _ = auth.create_session(conn, user_id, "127.0.0.1", "pytest")
    elsewhere, _ = auth.create_session(conn, user_id, "10.0.0.9", "pytest")
    auth.set_password(conn, user_id, "parola-noua-1", keep_token=current)
    conn.commit()
    assert auth.get_auth_context(conn, current)["user"]["id"] == user_id
    assert auth.get_auth_context(conn, elsewhere)["user"] is None
    assert auth.authenticate(conn, email, "parola-noua-1") is not None
