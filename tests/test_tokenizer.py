import os

import pytest

from core.errors import ConfinementViolation, DisallowedOption, MalformedSyntax
from core.option_policy import build_policy_table
from core.tokenizer import classify_tokens, split_command, tokenize
from models.models import Role, SessionFlags, TokenKind


class TestSplit:
    def test_plain_whitespace(self):
        tokens = split_command("-vlogDtpr  .\tdocs")
        assert [t.text for t in tokens] == ["-vlogDtpr", ".", "docs"]
        assert [t.position for t in tokens] == [1, 2, 3]

    def test_backslash_escapes_space(self):
        tokens = split_command(r"-r . my\ file")
        assert tokens[-1].text == "my file"
        assert tokens[-1].raw == r"my\ file"

    def test_escaped_dot_is_not_separator(self, table):
        tokens = split_command(r"-r \. . x")
        assert tokens[1].text == "."
        assert tokens[1].raw == r"\."
        with pytest.raises(MalformedSyntax):
            classify_tokens(tokens, table)

    def test_dangling_escape(self):
        with pytest.raises(MalformedSyntax):
            split_command("-r . docs\\")


class TestClassify:
    def test_kinds(self, table):
        tokens = classify_tokens(split_command("-vlogDtpr --partial-dir .tmp --bwlimit=100 . docs"),
                                 table)
        assert [t.kind for t in tokens] == [
            TokenKind.SHORT_CLUSTER,
            TokenKind.LONG_OPTION,
            TokenKind.OPTION_VALUE,
            TokenKind.LONG_OPTION,
            TokenKind.REGION_SEPARATOR,
            TokenKind.PATH_ARGUMENT,
        ]
        assert tokens[2].name == "partial-dir"
        assert tokens[3].value == "100"

    def test_capability_string(self, table):
        tokens = classify_tokens(split_command("-logDtpre.iLsfxCIvu . docs"), table)
        assert tokens[0].kind is TokenKind.SHORT_CLUSTER

    def test_numeric_short(self, table):
        tokens = classify_tokens(split_command("-B1024 . docs"), table)
        assert tokens[0].name == "block-size"
        assert tokens[0].value == "1024"

    def test_value_after_separator_token(self, table):
        # The value slot swallows the next token even if it is ".".
        tokens = classify_tokens(split_command("--temp-dir . . docs"), table)
        assert tokens[1].kind is TokenKind.OPTION_VALUE
        assert tokens[2].kind is TokenKind.REGION_SEPARATOR

    @pytest.mark.parametrize("command", [
        "-vr --rsh=sh . docs",
        "-vrs . docs",
        "-vr --daemon . docs",
        "-vr --sender . docs",
        "-vr --server . docs",
        "-vr -Z . docs",
        "-vr --Delete . docs",
        "-vr --no-munge-links . docs",
        "-vr --- . docs",
        "-vrL . docs",
    ])
    def test_disallowed(self, table, command):
        with pytest.raises(DisallowedOption):
            classify_tokens(split_command(command), table)

    def test_disallowed_carries_token_and_position(self, table):
        with pytest.raises(DisallowedOption) as exc:
            classify_tokens(split_command("-vr --rsh=sh . docs"), table)
        assert exc.value.token == "--rsh=sh"
        assert exc.value.position == 2
        assert exc.value.public_message == "option not allowed on this server"

    def test_option_after_separator(self, table):
        with pytest.raises(DisallowedOption):
            classify_tokens(split_command("-vr . docs --delete"), table)
        with pytest.raises(DisallowedOption):
            classify_tokens(split_command("-vr . docs -L"), table)

    def test_dash_path_after_separator(self, table):
        tokens = classify_tokens(split_command("-vr . -not-an-option-name"), table)
        assert tokens[-1].kind is TokenKind.PATH_ARGUMENT

    def test_missing_separator(self, table):
        with pytest.raises(MalformedSyntax):
            classify_tokens(split_command("-vlogDtpr"), table)

    def test_path_before_separator(self, table):
        with pytest.raises(MalformedSyntax):
            classify_tokens(split_command("-vr docs ."), table)

    def test_value_on_flag(self, table):
        with pytest.raises(MalformedSyntax):
            classify_tokens(split_command("--partial=yes . docs"), table)

    def test_missing_value(self, table):
        with pytest.raises(MalformedSyntax):
            classify_tokens(split_command("-r --temp-dir"), table)


class TestTokenize:
    def test_read_only_pull(self, root, validator, read_only_flags):
        table = build_policy_table(read_only_flags, root)
        inv = tokenize("-vlogDtpr . docs", table, validator, Role.SENDER)
        assert inv.options == ("-vlogDtpr",)
        assert inv.paths == ("docs",)
        assert inv.argv_options() == ("--server", "--sender", "-vlogDtpr")

    def test_delete_refused_in_read_only(self, root, validator, read_only_flags):
        table = build_policy_table(read_only_flags, root)
        with pytest.raises(DisallowedOption):
            tokenize("-vlogDtpr --delete . docs", table, validator, Role.SENDER)

    def test_separate_value_is_joined(self, table, validator):
        inv = tokenize("-r --partial-dir .tmp . docs", table, validator, Role.RECEIVER)
        assert inv.options == ("-r", "--partial-dir=.tmp")

    def test_link_dest_outside_root(self, table, validator):
        with pytest.raises(ConfinementViolation):
            tokenize("-r --link-dest=/etc/passwd . docs", table, validator, Role.SENDER)

    def test_link_dest_inside_root(self, table, validator):
        inv = tokenize("-r --link-dest=photos . docs", table, validator, Role.RECEIVER)
        assert inv.options == ("-r", "--link-dest=photos")

    def test_receive_only_check_skipped_for_sender(self, table, validator):
        inv = tokenize("-r --temp-dir=/var/tmp . docs", table, validator, Role.SENDER)
        assert "--temp-dir=/var/tmp" in inv.options
        with pytest.raises(ConfinementViolation):
            tokenize("-r --temp-dir=/var/tmp . docs", table, validator, Role.RECEIVER)

    def test_unchecked_value_passes_through(self, table, validator):
        inv = tokenize("-r --bwlimit=../../x . docs", table, validator, Role.RECEIVER)
        assert "--bwlimit=../../x" in inv.options

    def test_absolute_path_argument(self, table, validator):
        inv = tokenize("-r . /docs /photos/", table, validator, Role.SENDER)
        assert inv.paths == ("docs", "photos/")

    def test_no_paths(self, table, validator):
        assert tokenize("-r .", table, validator, Role.SENDER).paths == ()

    def test_glob_expansion(self, table, validator):
        inv = tokenize("-r . photos/*.jpg", table, validator, Role.SENDER)
        assert inv.paths == ("photos/a.jpg", "photos/b.jpg")

    def test_escaped_glob_is_literal(self, table, validator):
        inv = tokenize(r"-r . photos/\*.jpg", table, validator, Role.SENDER)
        assert inv.paths == ("photos/*.jpg",)

    def test_glob_without_match_is_literal(self, table, validator):
        inv = tokenize("-r . missing/*.txt", table, validator, Role.SENDER)
        assert inv.paths == ("missing/*.txt",)

    def test_parent_reference_in_path(self, table, validator):
        with pytest.raises(ConfinementViolation):
            tokenize("-r . ../outside", table, validator, Role.SENDER)

    def test_subtree_symlink_options_allowed_at_filesystem_root(self):
        from core.confinement import PathConfinementValidator
        from models.models import RestrictedRoot

        root = RestrictedRoot("/")
        table = build_policy_table(SessionFlags.resolve(), root)
        inv = tokenize("-rL .", table, PathConfinementValidator(root), Role.SENDER)
        assert inv.options == ("-rL",)

    def test_idempotent(self, table, validator):
        first = tokenize("-vlogDtpr --partial-dir .tmp . docs photos/*.jpg",
                         table, validator, Role.RECEIVER)
        second = tokenize("-vlogDtpr --partial-dir .tmp . docs photos/*.jpg",
                          table, validator, Role.RECEIVER)
        assert first == second


class TestDestinationRelativeValues:
    @pytest.fixture
    def planted(self, tree, outside):
        os.symlink(outside, str(tree / "sync" / "docs" / "esc"))

    @pytest.mark.parametrize("option", ["link-dest", "copy-dest", "compare-dest", "backup-dir"])
    def test_symlink_in_destination_refused(self, table, validator, planted, option):
        with pytest.raises(ConfinementViolation):
            tokenize(f"-r --{option}=esc . docs", table, validator, Role.RECEIVER)

    def test_separate_value_checked_from_destination(self, table, validator, planted):
        with pytest.raises(ConfinementViolation):
            tokenize("-r --copy-dest esc . docs", table, validator, Role.RECEIVER)

    def test_checked_from_destination_of_trailing_slash_path(self, table, validator, planted):
        with pytest.raises(ConfinementViolation):
            tokenize("-r --link-dest=esc . docs/", table, validator, Role.RECEIVER)

    def test_partial_dir_symlink_refused(self, table, validator, planted):
        with pytest.raises(ConfinementViolation):
            tokenize("-r --partial-dir=esc . docs", table, validator, Role.RECEIVER)

    def test_same_name_elsewhere_is_fine(self, table, validator, planted):
        inv = tokenize("-r --link-dest=esc . photos", table, validator, Role.RECEIVER)
        assert "--link-dest=esc" in inv.options


class TestEscapedParentReferences:
    @pytest.mark.parametrize("command", [
        r"-r . \.\./outside",
        r"-r . docs/\.\./\.\./x",
        r"-r . \.\.",
        r"-r . docs/.\./x",
        r"-r --link-dest=\.\./x . docs",
        r"-r --link-dest \.\./x . docs",
        r"-r --temp-dir=docs/\.\./\.\./x . docs",
    ])
    def test_refused(self, table, validator, command):
        with pytest.raises(ConfinementViolation):
            tokenize(command, table, validator, Role.RECEIVER)
