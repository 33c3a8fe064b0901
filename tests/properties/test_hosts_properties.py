"""Property-based tests for the managed /etc/hosts block."""

from hypothesis import given
from hypothesis import strategies as st

from cluster_deployer.hosts import end_marker, render_hosts_block, start_marker

line_text = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789.:# \t", max_size=30)
user_lines = st.lists(line_text, max_size=10)
entries = st.lists(
    st.tuples(st.integers(min_value=1, max_value=254), st.integers(min_value=1, max_value=99)).map(
        lambda t: f"10.0.0.{t[0]}\tlab-node-{t[1]:02d}"
    ),
    max_size=8,
)


@given(lines=user_lines, first=entries, second=entries)
def test_render_is_idempotent(lines, first, second):
    """Rendering the same entries onto an already rendered file changes nothing."""
    existing = "\n".join(lines)
    once = render_hosts_block(render_hosts_block(existing, first, "lab"), second, "lab")

    assert render_hosts_block(once, second, "lab") == once


@given(lines=user_lines, managed=entries)
def test_exactly_one_block(lines, managed):
    """A rendered file holds the cluster's block exactly once, last."""
    rendered = render_hosts_block("\n".join(lines), managed, "lab")

    assert rendered.count(start_marker("lab")) == 1
    assert rendered.count(end_marker("lab")) == 1
    assert rendered.endswith("\n".join([start_marker("lab"), *managed, end_marker("lab")]) + "\n")


@given(lines=user_lines, managed=entries)
def test_unmanaged_lines_survive(lines, managed):
    """Lines outside the block keep their order; only trailing blank lines are dropped."""
    rendered = render_hosts_block("\n".join(lines), managed, "lab")
    before_block = rendered.split(start_marker("lab"))[0]

    expected = "\n".join(lines).splitlines()
    while expected and not expected[-1].strip():
        expected.pop()
    if expected:
        assert before_block == "\n".join(expected) + "\n\n"
    else:
        assert before_block == ""
