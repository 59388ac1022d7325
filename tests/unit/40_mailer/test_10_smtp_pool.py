import aiosmtplib
import pytest

from portmail.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=True, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise OSError("Connection dead")
        return 250, b"OK"

    async def quit(self):
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("portmail.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    async with pool.connection("smtp.local", 25, "user", "pass", use_tls=False) as smtp1:
        pass
    async with pool.connection("smtp.local", 25, "user", "pass", use_tls=False) as smtp2:
        pass

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_expired_instance_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp1:
        pass
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp2:
        pass

    assert smtp1.closed is True
    assert smtp2 is not smtp1
    assert smtp1.login_credentials is None


@pytest.mark.asyncio
async def test_dead_instance_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=300)
    async with pool.connection("smtp.local", 25, "u", "p", use_tls=False) as smtp1:
        pass
    smtp1.alive = False
    async with pool.connection("smtp.local", 25, "u", "p", use_tls=False) as smtp2:
        pass

    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_connection_is_dropped_after_error(patch_aiosmtplib):
    pool = SMTPPool()

    with pytest.raises(OSError):
        async with pool.connection("smtp.local", 25, "u", "p", use_tls=False) as smtp:
            raise OSError("broken pipe")

    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "port,use_tls,expected",
    [
        (465, True, (True, False)),
        (587, True, (False, True)),
        (25, False, (False, False)),
    ],
)
async def test_tls_mode_follows_port(patch_aiosmtplib, port, use_tls, expected):
    pool = SMTPPool()
    async with pool.connection("smtp.gmail.com", port, "u", "p", use_tls=use_tls) as smtp:
        pass

    assert (smtp.use_tls, smtp.start_tls) == expected


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool(ttl=300)
    async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp:
        pass

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_close_all(patch_aiosmtplib):
    pool = SMTPPool()
    async with pool.connection("a.local", 25, None, None, use_tls=False):
        pass
    async with pool.connection("b.local", 25, None, None, use_tls=False):
        pass

    await pool.close_all()

    assert pool.pool == {}
    assert all(smtp.closed for smtp in patch_aiosmtplib)


@pytest.mark.asyncio
async def test_failed_login_closes_socket(monkeypatch, patch_aiosmtplib):
    async def rejected_login(self, user, password):
        raise aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Username and Password not accepted")

    monkeypatch.setattr(DummySMTP, "login", rejected_login)
    pool = SMTPPool()

    with pytest.raises(aiosmtplib.SMTPAuthenticationError):
        async with pool.connection("smtp.local", 587, "u", "wrong", use_tls=True):
            pass

    (smtp,) = patch_aiosmtplib
    assert smtp.connected is True
    assert smtp.closed is True
    assert pool.pool == {}
