from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_relations import (
    DuplicateAggregateAlias,
    InvalidIdentifier,
    UndefinedRelation,
    UnsupportedConstraint,
)
from sqla_relations.aggregates import parse_count_expression
from sqla_relations.relations import OWNER_KEY_LABEL, ROW_NUMBER_LABEL, bind_relation

from ..models import Country, Node, Post, User


def _sql(statement: sa.Select) -> str:
    return str(statement.compile(compile_kwargs={"literal_binds": True}))


class TestParseCountExpression:
    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("posts", ("posts", "posts_count")),
            ("posts as total", ("posts", "total")),
            ("posts AS total", ("posts", "total")),
            ("  posts   as   total ", ("posts", "total")),
        ],
    )
    def test_valid(self, expression: str, expected: tuple[str, str]) -> None:
        assert parse_count_expression(expression) == expected

    @pytest.mark.parametrize("expression", ["posts as", "posts as a as b", "po-sts", "posts as to tal"])
    def test_invalid(self, expression: str) -> None:
        with pytest.raises(InvalidIdentifier):
            parse_count_expression(expression)


class TestExistenceClauses:
    def test_has_is_exists(self) -> None:
        sql = _sql(User.query().has("posts").statement)

        assert "EXISTS" in sql
        assert "posts.user_id = users.id" in sql

    def test_doesnt_have_is_not_exists(self) -> None:
        assert "NOT (EXISTS" in _sql(User.query().doesnt_have("posts").statement)

    def test_count_comparison(self) -> None:
        sql = _sql(User.query().has("posts", ">=", 2).statement)

        assert "count(*)" in sql
        assert ">= 2" in sql

    def test_dotted_path_nests(self) -> None:
        sql = _sql(User.query().has("posts.comments").statement)

        assert sql.count("EXISTS") == 2

    def test_where_pivot_in_callback(self) -> None:
        sql = _sql(User.query().where_has("cars", lambda q: q.where_pivot("color", "red")).statement)

        assert "car_user.color = 'red'" in sql

    def test_or_has_combines_with_or(self) -> None:
        sql = _sql(User.query().where(name="alice").or_has("posts").statement)

        assert " OR (EXISTS" in sql or " OR EXISTS" in sql

    @pytest.mark.parametrize("operator", ["~", "like", "=>"])
    def test_unknown_operator(self, operator: str) -> None:
        with pytest.raises(UnsupportedConstraint):
            User.query().has("posts", operator, 1)

    def test_operator_without_value(self) -> None:
        with pytest.raises(UnsupportedConstraint):
            User.query().has("posts", ">=")

    def test_doesnt_have_rejects_count(self) -> None:
        with pytest.raises(UnsupportedConstraint):
            User.query().doesnt_have("posts", ">", 1)

    def test_unknown_relation(self) -> None:
        with pytest.raises(UndefinedRelation):
            User.query().has("friends")

    def test_unknown_pivot_column(self) -> None:
        with pytest.raises(UnsupportedConstraint):
            User.query().where_has("cars", lambda q: q.where_pivot("seat", 1))


class TestWithCount:
    def test_alias_column(self) -> None:
        query = User.query().with_count("posts as total")

        assert query.aggregates == ("total",)
        assert "AS total" in _sql(query.statement)

    def test_default_alias(self) -> None:
        assert User.query().with_count("posts").aggregates == ("posts_count",)

    def test_duplicate_alias(self) -> None:
        query = User.query().with_count("posts")

        with pytest.raises(DuplicateAggregateAlias):
            query.with_count("cars as posts_count")

    def test_same_relation_two_aliases(self) -> None:
        query = (
            User.query()
            .with_count("posts as all_posts")
            .with_count("posts as published", lambda q: q.where(is_published=True))
        )

        assert query.aggregates == ("all_posts", "published")


class TestScopedStatements:
    def test_has_many_partitions_on_foreign_key(self) -> None:
        relation = bind_relation(User, "posts", [User(id=1, name="a"), User(id=2, name="b")])
        sql = _sql(relation.scoped(relation.owner_keys()))

        assert f"posts.user_id AS {OWNER_KEY_LABEL}" in sql
        assert "posts.user_id IN (1, 2)" in sql

    def test_owner_keys_are_distinct_and_non_null(self) -> None:
        owners = [Post(id=1, title="a", user_id=1), Post(id=2, title="b", user_id=1), Post(id=3, title="c")]

        assert bind_relation(Post, "user", owners).owner_keys() == [1]

    def test_belongs_to_many_joins_pivot(self) -> None:
        relation = bind_relation(User, "cars", [User(id=1, name="a")])
        sql = _sql(relation.scoped([1]))

        assert "JOIN car_user ON car_user.car_id = cars.id" in sql
        assert "car_user.color AS pivot_color" in sql

    def test_many_through_scopes_intermediary(self) -> None:
        relation = bind_relation(Country, "posts", [Country(id=1, name="x")])
        sql = _sql(relation.scoped([1]))

        assert "posts.user_id = users.id" in sql
        assert "users.country_id IN (1)" in sql

    def test_limit_becomes_per_owner_window(self) -> None:
        relation = bind_relation(User, "posts", [User(id=1, name="a"), User(id=2, name="b")])
        relation.order_by("id").limit(2)
        sql = _sql(relation.scoped([1, 2]))

        assert "row_number() OVER (PARTITION BY posts.user_id ORDER BY posts.id)" in sql
        assert f"{ROW_NUMBER_LABEL} <= 2" in sql
        assert "LIMIT" not in sql

    def test_no_window_without_limit(self) -> None:
        relation = bind_relation(User, "posts", [User(id=1, name="a")])

        assert "row_number" not in _sql(relation.scoped([1]))


class TestSelfReferentialStatements:
    def test_has_selects_from_alias(self) -> None:
        sql = _sql(Node.query().has("children").statement)

        assert "FROM nodes AS nodes_1" in sql
        assert "nodes_1.parent_id = nodes.id" in sql

    def test_with_count_selects_from_alias(self) -> None:
        sql = _sql(Node.query().with_count("children").statement)

        assert "nodes_1.parent_id = nodes.id" in sql

    def test_other_relations_are_not_aliased(self) -> None:
        assert " AS posts_1" not in _sql(User.query().has("posts").statement)
