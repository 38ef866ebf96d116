from __future__ import annotations

import base64
import json
import os
from datetime import datetime, timezone

import requests
import streamlit as st

st.set_page_config(page_title="Clinic - Operator Console", layout="wide")

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")



# JWT helpers (UI only, signature not checked)

def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def jwt_payload(token: str) -> dict:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return {}
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
        return payload if isinstance(payload, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def jwt_is_expired(token: str) -> bool:
    p = jwt_payload(token)
    try:
        exp_int = int(p.get("exp"))
    except (TypeError, ValueError):
        return False

    now = int(datetime.now(tz=timezone.utc).timestamp())
    return now >= (exp_int - 5)


def jwt_email(token: str) -> str:
    p = jwt_payload(token)
    return str(p.get("email") or p.get("sub") or "user")



# HTTP client (with JWT)

class ApiError(Exception):
    def __init__(self, status_code: int, error: str, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.error = error


def _raise_for(r: requests.Response) -> None:
    if r.ok:
        return
    try:
        body = r.json()
    except ValueError:
        body = {}
    detail = body.get("detail") if isinstance(body, dict) else None
    if not isinstance(detail, str):
        detail = r.reason or "Request failed"
    raise ApiError(r.status_code, str(body.get("error", "")) if isinstance(body, dict) else "", detail)


def api_get(path: str, token: str | None = None, params: dict | None = None) -> dict | list:
    headers = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    r = requests.get(f"{API_BASE}{path}", headers=headers, params=params, timeout=10)

    if r.status_code == 401 and token:
        raise PermissionError("401 Unauthorized (token invalid/expired or backend restarted).")

    _raise_for(r)
    return r.json()


def api_post(path: str, payload: dict | None = None, token: str | None = None) -> dict:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    r = requests.post(f"{API_BASE}{path}", headers=headers, json=payload or {}, timeout=10)

    if r.status_code == 401 and token:
        raise PermissionError("401 Unauthorized (token invalid/expired or backend restarted).")

    _raise_for(r)
    return r.json()


def api_login(email: str, password: str) -> dict:
    # OAuth2PasswordRequestForm => x-www-form-urlencoded
    r = requests.post(
        f"{API_BASE}/api/auth/login",
        data={"username": email, "password": password},
        timeout=10,
    )
    _raise_for(r)
    return r.json()


def is_logged_in() -> bool:
    token = st.session_state.get("token")
    return bool(token) and isinstance(token, str) and len(token) > 0


def store_session(res: dict) -> None:
    st.session_state["token"] = res["access_token"]
    st.session_state["refresh_token"] = res.get("refresh_token")


def try_refresh() -> bool:
    refresh_token = st.session_state.get("refresh_token")
    if not refresh_token:
        return False
    try:
        store_session(api_post("/api/auth/refresh", {"refreshToken": refresh_token}))
        return True
    except (ApiError, requests.RequestException):
        return False


def do_logout() -> None:
    token = st.session_state.get("token")
    if token and not jwt_is_expired(token):
        try:
            api_post("/api/auth/logout", token=token)
        except (ApiError, PermissionError, requests.RequestException) as e:
            # local logout still goes ahead
            st.toast(f"Server-side logout failed: {e}")
    for key in ("token", "refresh_token", "preauth", "auth_error", "fresh_backup_codes", "totp_setup"):
        st.session_state.pop(key, None)
    st.rerun()


def require_auth() -> str | None:
    token = st.session_state.get("token")
    if not token:
        st.warning("Restricted section. Log in from the sidebar.")
        return None

    if jwt_is_expired(token) and try_refresh():
        token = st.session_state["token"]

    if jwt_is_expired(token):
        st.error("Session expired. Log out from the sidebar and log in again.")
        return None

    return token


def show_backup_codes(codes: list[str]) -> None:
    st.warning("Backup codes: store them now, they will not be shown again.")
    st.code("\n".join(codes))



# Sidebar: login + second factor

with st.sidebar:
    st.header("Sign in")

    token = st.session_state.get("token")
    preauth = st.session_state.get("preauth")

    if is_logged_in():
        st.write(f"User: **{jwt_email(token)}**")

        if st.session_state.get("auth_error"):
            st.error(st.session_state["auth_error"])

        if st.button("Logout", key="logout_btn"):
            do_logout()

    elif preauth:
        methods = preauth["twoFactorMethods"]
        st.info(f"Second factor required for **{preauth['email']}**.")
        st.caption(f"The verification step expires {preauth['expiresIn']} seconds after login.")

        options = [m for m in ("authenticator", "email") if methods.get(m)] + ["backup"]
        method = st.radio("Method", options=options, key="tfa_method")
        code = st.text_input("Code", key="tfa_code")

        c1, c2 = st.columns(2)
        if c1.button("Verify", key="tfa_verify"):
            try:
                res = api_post(
                    "/api/auth/2fa/verify",
                    {"twoFactorToken": preauth["twoFactorToken"], "method": method, "code": code.strip()},
                )
                store_session(res)
                st.session_state.pop("preauth", None)
                st.rerun()
            except ApiError as e:
                if e.error in ("token_not_found", "token_expired"):
                    # the pre-auth session is gone: back to the password step
                    st.session_state.pop("preauth", None)
                st.error(str(e))

        if methods.get("email") and c2.button("Send email code", key="tfa_email"):
            try:
                api_post("/api/auth/2fa/email-code", {"twoFactorToken": preauth["twoFactorToken"]})
                st.success("Code sent.")
            except ApiError as e:
                st.error(str(e))

        if st.button("Cancel", key="tfa_cancel"):
            st.session_state.pop("preauth", None)
            st.rerun()

    else:
        email = st.text_input("Email", key="login_email")
        password = st.text_input("Password", type="password", key="login_pass")

        if st.button("Login", key="login_btn"):
            try:
                res = api_login(email.strip().lower(), password)
                if "access_token" in res:
                    store_session(res)
                else:
                    st.session_state["preauth"] = res
                st.session_state.pop("auth_error", None)
                st.rerun()
            except ApiError as e:
                st.error(str(e))
            except requests.RequestException as e:
                st.error(f"API unreachable: {e}")

        with st.expander("Forgot password"):
            fp_email = st.text_input("Account email", key="fp_email")
            if st.button("Send reset link", key="fp_btn"):
                try:
                    res = api_post("/api/auth/forgot-password", {"email": fp_email.strip()})
                    st.success(res.get("detail") or "Done.")
                except ApiError as e:
                    st.error(str(e))

    st.divider()
    st.caption(f"API: {API_BASE}")



# UI

st.title("Clinic - Operator Console (API REST + JWT + 2FA)")

tab1, tab2 = st.tabs(["Account", "Two-factor authentication"])



# TAB 1 - Account (PROTECTED)

with tab1:
    st.subheader("My account")

    token = require_auth()
    if token:
        try:
            me = api_get("/api/me", token=token)
            st.write(f"**{me['last_name']} {me['first_name']}** | {me['email']}")
            st.write(f"Two-factor authentication: {'on' if me['two_factor_enabled'] else 'off'}")
        except PermissionError as e:
            st.session_state["auth_error"] = str(e)
            st.error("Session not valid. Log out and log in again.")
        except ApiError as e:
            st.error(f"Account error: {e}")



# TAB 2 - 2FA enrollment (PROTECTED)

with tab2:
    st.subheader("Two-factor authentication")

    token = require_auth()
    if token:
        try:
            status = api_get("/api/auth/2fa/status", token=token)
        except PermissionError as e:
            st.session_state["auth_error"] = str(e)
            st.error("Session not valid. Log out and log in again.")
            status = None
        except ApiError as e:
            st.error(f"2FA status error: {e}")
            status = None

        if status:
            c1, c2, c3 = st.columns(3)
            c1.metric("Authenticator", "on" if status["twoFactorAuthenticatorEnabled"] else "off")
            c2.metric("Email codes", "on" if status["twoFactorEmailEnabled"] else "off")
            c3.metric("Backup codes left", status["remainingBackupCodes"])

            if st.session_state.get("fresh_backup_codes"):
                show_backup_codes(st.session_state["fresh_backup_codes"])

            st.divider()

            # enable
            off = [m for m, key in (("authenticator", "twoFactorAuthenticatorEnabled"),
                                    ("email", "twoFactorEmailEnabled")) if not status[key]]
            if off:
                with st.expander("Enable a method"):
                    method = st.selectbox("Method", options=off, key="setup_method")
                    if st.button("Start setup", key="setup_btn"):
                        try:
                            res = api_post("/api/auth/2fa/setup", {"method": method}, token=token)
                            if "qrCodeDataUri" in res:
                                st.session_state["totp_setup"] = res
                            else:
                                st.success(res.get("detail") or "Code sent.")
                        except (ApiError, PermissionError) as e:
                            st.error(str(e))

                    setup = st.session_state.get("totp_setup")
                    if method == "authenticator" and setup:
                        st.image(setup["qrCodeDataUri"], width=220)
                        st.caption(f"Secret: {setup['secret']}")

                    code = st.text_input("Code", key="setup_code")
                    if st.button("Confirm", key="confirm_btn"):
                        try:
                            res = api_post("/api/auth/2fa/confirm", {"method": method, "code": code.strip()}, token=token)
                            st.session_state.pop("totp_setup", None)
                            if res.get("backupCodes"):
                                st.session_state["fresh_backup_codes"] = res["backupCodes"]
                            st.rerun()
                        except (ApiError, PermissionError) as e:
                            st.error(str(e))

            # disable
            on = [m for m, key in (("authenticator", "twoFactorAuthenticatorEnabled"),
                                   ("email", "twoFactorEmailEnabled")) if status[key]]
            if on:
                with st.expander("Disable a method"):
                    method = st.selectbox("Method", options=on, key="disable_method")
                    if method == "email" and st.button("Send disable code", key="disable_code_btn"):
                        try:
                            api_post("/api/auth/2fa/disable-code", token=token)
                            st.success("Code sent.")
                        except (ApiError, PermissionError) as e:
                            st.error(str(e))
                    password = st.text_input("Password", type="password", key="disable_pass")
                    code = st.text_input("Code", key="disable_code")
                    if st.button("Disable", key="disable_btn"):
                        try:
                            api_post(
                                "/api/auth/2fa/disable",
                                {"method": method, "password": password, "code": code.strip()},
                                token=token,
                            )
                            st.session_state.pop("fresh_backup_codes", None)
                            st.rerun()
                        except (ApiError, PermissionError) as e:
                            st.error(str(e))

                with st.expander("Regenerate backup codes"):
                    password = st.text_input("Password", type="password", key="regen_pass")
                    if st.button("Regenerate", key="regen_btn"):
                        try:
                            res = api_post("/api/auth/2fa/backup-codes", {"password": password}, token=token)
                            st.session_state["fresh_backup_codes"] = res.get("backupCodes") or []
                            st.rerun()
                        except (ApiError, PermissionError) as e:
                            st.error(str(e))
