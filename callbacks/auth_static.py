import hmac


def check_auth(username=None, password=None, expected_username="", expected_password=""):

    # if auth ok return username
    if not expected_username or not expected_password:
        return False
    user_ok = hmac.compare_digest((username or "").encode(), expected_username.encode())
    pass_ok = hmac.compare_digest((password or "").encode(), expected_password.encode())
    if user_ok and pass_ok:
        return username

    # if auth fail return False
    return False
