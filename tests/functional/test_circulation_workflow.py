"""
Functional tests: the circulation cycle end to end.
Borrow → overdue sweep locks the account → return → the waiting patron is told → unblock.
"""
import pytest
from httpx import AsyncClient

from tests.functional.conftest import auth_header, backdate_loan, create_book


async def _notifications(client, token, **params):
    resp = await client.get("/api/v1/notifications", params=params, headers=auth_header(token))
    assert resp.status_code == 200
    return resp.json()["items"]


class TestOverdueCycle:
    @pytest.mark.asyncio
    async def test_overdue_lock_return_and_unblock(
        self, client: AsyncClient, test_session_factory, registered_member, second_member,
        librarian_user,
    ):
        staff = auth_header(librarian_user["token"])
        book = await create_book(client, librarian_user["token"], quantity=1, title="Dune")

        # 1. Member borrows the only copy
        loan_resp = await client.post(
            "/api/v1/loans",
            json={"book_id": book["id"]},
            headers=auth_header(registered_member["token"]),
        )
        assert loan_resp.status_code == 201
        loan = loan_resp.json()
        assert loan["status"] == "borrowed"
        assert loan["user_id"] == registered_member["id"]

        check = await client.get(f"/api/v1/books/{book['id']}/borrowed", headers=staff)
        assert check.json() == {"book_id": book["id"], "is_borrowed": True}

        # 2. Another member joins the waiting list
        res_resp = await client.post(
            "/api/v1/reservations",
            json={"book_id": book["id"]},
            headers=auth_header(second_member["token"]),
        )
        assert res_resp.status_code == 201
        assert res_resp.json()["priority"] == 1

        # 3. Time passes and the sweep finds the loan overdue
        await backdate_loan(test_session_factory, loan["id"], days=3)
        sweep = await client.post("/api/v1/sweeps", headers=staff)
        assert sweep.status_code == 200
        body = sweep.json()
        assert body["ok"] is True
        assert body["skipped"] is False
        assert body["processed"] == 1
        assert body["newly_overdue"] == 1
        assert body["accounts_locked"] == 1
        assert body["notifications_created"] == 1

        loan_now = await client.get(f"/api/v1/loans/{loan['id']}", headers=staff)
        assert loan_now.json()["status"] == "overdue"

        account = await client.get(f"/api/v1/users/{registered_member['id']}", headers=staff)
        assert account.json()["is_blocked"] is True
        assert loan["id"] in account.json()["block_reason"]

        inbox = await _notifications(client, registered_member["token"])
        assert [n["type"] for n in inbox] == ["overdue"]
        assert inbox[0]["title"] == "Overdue book"

        # 4. A second sweep changes nothing and does not repeat the notice
        again = await client.post("/api/v1/sweeps", headers=staff)
        assert again.json()["newly_overdue"] == 0
        assert again.json()["notifications_created"] == 0
        assert len(await _notifications(client, registered_member["token"])) == 1

        last = await client.get("/api/v1/sweeps/last", headers=staff)
        assert last.status_code == 200
        assert last.json()["newly_overdue"] == 0

        # 5. The blocked patron cannot borrow anything else
        other = await create_book(client, librarian_user["token"], quantity=2)
        refused = await client.post(
            "/api/v1/loans",
            json={"book_id": other["id"]},
            headers=auth_header(registered_member["token"]),
        )
        assert refused.status_code == 400
        assert "blocked" in refused.json()["detail"]

        # 6. The book comes back and the first patron in line is told
        returned = await client.post(f"/api/v1/loans/{loan['id']}/return", headers=staff)
        assert returned.status_code == 200
        assert returned.json()["status"] == "returned"
        assert returned.json()["return_date"] is not None

        waiting_inbox = await _notifications(client, second_member["token"])
        assert [n["type"] for n in waiting_inbox] == ["book_available"]
        assert "Dune" in waiting_inbox[0]["message"]

        book_now = await client.get(f"/api/v1/books/{book['id']}", headers=staff)
        assert book_now.json()["available_quantity"] == 1

        # 7. Returning the book does not lift the block; a librarian does
        account = await client.get(f"/api/v1/users/{registered_member['id']}", headers=staff)
        assert account.json()["is_blocked"] is True

        unblock = await client.put(
            f"/api/v1/users/{registered_member['id']}/block",
            json={"is_blocked": False},
            headers=staff,
        )
        assert unblock.status_code == 200
        assert unblock.json()["is_blocked"] is False
        assert unblock.json()["block_reason"] is None

        retry = await client.post(
            "/api/v1/loans",
            json={"book_id": other["id"]},
            headers=auth_header(registered_member["token"]),
        )
        assert retry.status_code == 201

    @pytest.mark.asyncio
    async def test_unblocked_patron_is_relocked_while_book_is_out(
        self, client: AsyncClient, test_session_factory, registered_member, librarian_user,
    ):
        staff = auth_header(librarian_user["token"])
        book = await create_book(client, librarian_user["token"], quantity=1)
        loan = (await client.post(
            "/api/v1/loans",
            json={"book_id": book["id"]},
            headers=auth_header(registered_member["token"]),
        )).json()
        await backdate_loan(test_session_factory, loan["id"], days=1)
        await client.post("/api/v1/sweeps", headers=staff)

        await client.put(
            f"/api/v1/users/{registered_member['id']}/block",
            json={"is_blocked": False},
            headers=staff,
        )
        sweep = await client.post("/api/v1/sweeps", headers=staff)

        assert sweep.json()["processed"] == 1
        assert sweep.json()["newly_overdue"] == 0
        # The first notice is still unread, so no second one is sent
        assert sweep.json()["notifications_created"] == 0
        account = await client.get(f"/api/v1/users/{registered_member['id']}", headers=staff)
        assert account.json()["is_blocked"] is True


class TestReservationHandOff:
    @pytest.mark.asyncio
    async def test_reserver_borrows_after_notice(
        self, client: AsyncClient, registered_member, second_member, librarian_user,
    ):
        staff = auth_header(librarian_user["token"])
        book = await create_book(client, librarian_user["token"], quantity=1)
        loan = (await client.post(
            "/api/v1/loans",
            json={"book_id": book["id"]},
            headers=auth_header(registered_member["token"]),
        )).json()
        reservation = (await client.post(
            "/api/v1/reservations",
            json={"book_id": book["id"]},
            headers=auth_header(second_member["token"]),
        )).json()

        await client.post(f"/api/v1/loans/{loan['id']}/return", headers=staff)

        mine = await client.get(
            "/api/v1/reservations/mine", headers=auth_header(second_member["token"])
        )
        held = mine.json()["items"][0]
        assert held["id"] == reservation["id"]
        assert held["notification_sent"] is True
        assert held["due_date"] is not None

        borrow = await client.post(
            "/api/v1/loans",
            json={"book_id": book["id"]},
            headers=auth_header(second_member["token"]),
        )
        assert borrow.status_code == 201

        mine = await client.get(
            "/api/v1/reservations/mine", headers=auth_header(second_member["token"])
        )
        assert mine.json()["items"][0]["status"] == "fulfilled"

    @pytest.mark.asyncio
    async def test_cancelled_reservation_is_skipped(
        self, client: AsyncClient, registered_member, second_member, librarian_user,
    ):
        staff = auth_header(librarian_user["token"])
        book = await create_book(client, librarian_user["token"], quantity=1)
        loan = (await client.post(
            "/api/v1/loans",
            json={"book_id": book["id"]},
            headers=auth_header(registered_member["token"]),
        )).json()
        first = (await client.post(
            "/api/v1/reservations",
            json={"book_id": book["id"]},
            headers=auth_header(second_member["token"]),
        )).json()
        # Staff queue the librarian too, behind the member
        second = await client.post(
            "/api/v1/reservations",
            json={"book_id": book["id"], "user_id": librarian_user["id"]},
            headers=staff,
        )
        assert second.json()["priority"] == 2

        cancel = await client.post(
            f"/api/v1/reservations/{first['id']}/cancel",
            headers=auth_header(second_member["token"]),
        )
        assert cancel.status_code == 200
        assert cancel.json()["status"] == "cancelled"

        await client.post(f"/api/v1/loans/{loan['id']}/return", headers=staff)

        assert await _notifications(client, second_member["token"]) == []
        staff_inbox = await _notifications(client, librarian_user["token"], type="book_available")
        assert len(staff_inbox) == 1

    @pytest.mark.asyncio
    async def test_queue_is_visible_to_staff(
        self, client: AsyncClient, registered_member, second_member, librarian_user,
    ):
        staff = auth_header(librarian_user["token"])
        book = await create_book(client, librarian_user["token"], quantity=1)
        await client.post(
            "/api/v1/loans", json={"book_id": book["id"]},
            headers=auth_header(librarian_user["token"]),
        )
        for member in (registered_member, second_member):
            resp = await client.post(
                "/api/v1/reservations",
                json={"book_id": book["id"]},
                headers=auth_header(member["token"]),
            )
            assert resp.status_code == 201

        queue = await client.get(f"/api/v1/books/{book['id']}/reservations", headers=staff)
        assert queue.status_code == 200
        assert [r["user_id"] for r in queue.json()] == [
            registered_member["id"], second_member["id"],
        ]
        assert [r["priority"] for r in queue.json()] == [1, 2]


class TestNotificationInbox:
    @pytest.mark.asyncio
    async def test_mark_read_and_read_all(
        self, client: AsyncClient, test_session_factory, registered_member, second_member,
        librarian_user,
    ):
        staff = auth_header(librarian_user["token"])
        member = auth_header(registered_member["token"])
        book = await create_book(client, librarian_user["token"], quantity=1)
        loan = (await client.post(
            "/api/v1/loans", json={"book_id": book["id"]}, headers=member,
        )).json()
        await backdate_loan(test_session_factory, loan["id"], days=2)
        await client.post("/api/v1/sweeps", headers=staff)

        notice = (await _notifications(client, registered_member["token"]))[0]

        # Someone else's notification looks like it does not exist
        foreign = await client.post(
            f"/api/v1/notifications/{notice['id']}/read",
            headers=auth_header(second_member["token"]),
        )
        assert foreign.status_code == 404

        read = await client.post(f"/api/v1/notifications/{notice['id']}/read", headers=member)
        assert read.status_code == 200
        assert read.json()["read"] is True
        assert await _notifications(client, registered_member["token"], unread_only=True) == []

        # Blocked accounts are left alone by the sweep
        quiet = await client.post("/api/v1/sweeps", headers=staff)
        assert quiet.json()["processed"] == 0

        # Once unblocked with the book still out, the patron is relocked and warned again
        await client.put(
            f"/api/v1/users/{registered_member['id']}/block",
            json={"is_blocked": False},
            headers=staff,
        )
        sweep = await client.post("/api/v1/sweeps", headers=staff)
        assert sweep.json()["notifications_created"] == 1

        read_all = await client.post("/api/v1/notifications/read-all", headers=member)
        assert read_all.json() == {"updated": 1}
