"""
User accounts: creation, lookup, profile patches and credential checks.
"""
import pytest

from juicebox.datastore import UserNotFound


class TestCreateUser:
    """create_user hashes the password and absorbs username conflicts."""

    def test_creates_user(self, datastore):
        user = datastore.create_user("glamgal", "soglam", name="Joshua", location="Upper East Side")

        assert user.username == "glamgal"
        assert user.password_hash != "soglam"
        assert user.active is True
        assert user.is_active is True
        assert user.get_id() == str(user.id)

    def test_taken_username_returns_none(self, datastore, albert):
        assert datastore.create_user("albert", "another") is None
        assert len(datastore.list_users()) == 1

    def test_blank_username_rejected(self, datastore):
        with pytest.raises(ValueError):
            datastore.create_user("  ", "pw")


class TestLookups:
    """Public user records never carry the password hash."""

    def test_list_users(self, datastore, albert, sandra):
        users = datastore.list_users()

        assert [user["username"] for user in users] == ["albert", "sandra"]
        assert all("password_hash" not in user for user in users)

    def test_get_user_includes_posts(self, datastore, albert, sandra):
        datastore.create_post(albert.id, "Mine", "body", ["x"])
        datastore.create_post(sandra.id, "Not mine", "body")

        user = datastore.get_user(albert.id)

        assert user["username"] == "albert"
        assert "password_hash" not in user
        assert [post["title"] for post in user["posts"]] == ["Mine"]

    def test_get_missing_user(self, datastore):
        assert datastore.get_user(42) is None
        assert datastore.load_user(42) is None

    def test_get_user_by_username(self, datastore, sandra):
        assert datastore.get_user_by_username("sandra")["id"] == sandra.id
        assert datastore.get_user_by_username("nobody") is None


class TestUpdateUser:
    """update_user patches only the supplied fields."""

    def test_patches_name_only(self, datastore, albert):
        user = datastore.update_user(albert.id, name="Newname")

        assert user["name"] == "Newname"
        assert user["location"] == "Sidney, Australia"

    def test_no_fields_is_noop(self, datastore, albert):
        assert datastore.update_user(albert.id)["name"] == "Al Bert"

    def test_deactivate(self, datastore, albert):
        datastore.update_user(albert.id, active=False)

        assert datastore.load_user(albert.id).is_active is False

    def test_missing_user_raises(self, datastore):
        with pytest.raises(UserNotFound):
            datastore.update_user(7, name="ghost")


class TestVerifyUser:
    """verify_user checks the password against the stored hash."""

    def test_correct_password(self, datastore, albert):
        assert datastore.verify_user("albert", "bertie99").id == albert.id

    def test_wrong_password(self, datastore, albert):
        assert datastore.verify_user("albert", "wrong") is None

    def test_unknown_username(self, datastore):
        assert datastore.verify_user("nobody", "pw") is None
