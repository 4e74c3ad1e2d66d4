import io
import unittest

from dict_errors import MalformedResponse, ProtocolViolation, UnexpectedEndOfStream
from dict_models import Definition, StatusReply
from dict_protocol import (
    LineStream,
    check_encoding,
    parse_banner,
    parse_status,
    quote_arg,
    read_block,
    split_command,
    split_entry,
    split_quoted,
    unquote,
)


def stream_of(text: str) -> LineStream:
    return LineStream(io.BytesIO(text.encode('utf-8')), io.BytesIO())


class TestStatusLine(unittest.TestCase):
    def test_code_and_details_split_on_first_space(self):
        st = parse_status('150 2 definitions retrieved')
        self.assertEqual(st.code, 150)
        self.assertEqual(st.details, '2 definitions retrieved')

    def test_details_kept_verbatim(self):
        st = parse_status('220 dict.org  dictd  <auth.mime>  ')
        self.assertEqual(st.details, 'dict.org  dictd  <auth.mime>  ')

    def test_bare_code(self):
        self.assertEqual(parse_status('250'), StatusReply(250, ''))

    def test_empty_line_is_malformed(self):
        with self.assertRaises(MalformedResponse):
            parse_status('')

    def test_bad_codes_are_malformed(self):
        for line in ('abc details', '25 short', '2500 long', 'hello', ' 250 ok', '２５０ ok'):
            with self.subTest(line=line):
                with self.assertRaises(MalformedResponse):
                    parse_status(line)

    def test_malformed_is_a_protocol_violation(self):
        with self.assertRaises(ProtocolViolation):
            parse_status('x')

    def test_count(self):
        self.assertEqual(StatusReply(110, '3 databases present').count(), 3)
        self.assertEqual(StatusReply(152, '0 matches found').count(), 0)

    def test_count_missing_or_not_numeric(self):
        for details in ('', 'many definitions', '-1 definitions', '2x matches'):
            with self.subTest(details=details):
                with self.assertRaises(ProtocolViolation):
                    StatusReply(150, details).count()


class TestBlockReader(unittest.TestCase):
    def test_reads_until_lone_dot(self):
        s = stream_of('line one\r\nline two\r\n.\r\nnext\r\n')
        self.assertEqual(read_block(s), ['line one', 'line two'])
        # Terminator consumed, nothing after it.
        self.assertEqual(s.read_line(), 'next')

    def test_blank_lines_and_double_dots_kept(self):
        s = stream_of('hello\r\n\r\n..\r\n  .\r\n. \r\nend\r\n.\r\n')
        self.assertEqual(read_block(s), ['hello', '', '..', '  .', '. ', 'end'])

    def test_skip_blank(self):
        s = stream_of('a\r\n\r\nb\r\n\r\n.\r\n')
        self.assertEqual(read_block(s, skip_blank=True), ['a', 'b'])

    def test_empty_block(self):
        self.assertEqual(read_block(stream_of('.\r\n')), [])

    def test_bare_lf_line_endings(self):
        self.assertEqual(read_block(stream_of('a\nb\n.\n')), ['a', 'b'])

    def test_end_of_stream_before_terminator(self):
        with self.assertRaises(UnexpectedEndOfStream):
            read_block(stream_of('a\r\nb\r\n'))

    def test_definition_body_never_holds_terminator(self):
        lines = read_block(stream_of('x\r\n..\r\n\r\n.\r\n'))
        d = Definition('x', 'wn', tuple(lines))
        self.assertNotIn('.', d.body)
        self.assertEqual(d.text, 'x\n..\n')


class TestLineStream(unittest.TestCase):
    def test_write_line_appends_crlf(self):
        out = io.BytesIO()
        s = LineStream(io.BytesIO(), out)
        s.write_line('SHOW DB')
        self.assertEqual(out.getvalue(), b'SHOW DB\r\n')

    def test_read_line_none_at_eof(self):
        s = stream_of('220 hi\r\n')
        self.assertEqual(s.read_line(), '220 hi')
        self.assertIsNone(s.read_line())

    def test_invalid_bytes_are_replaced(self):
        s = LineStream(io.BytesIO(b'wn "caf\xff"\r\n'), io.BytesIO())
        self.assertEqual(s.read_line(), 'wn "caf�"')

    def test_closed_file_raises_end_of_stream(self):
        r = io.BytesIO(b'x\r\n')
        s = LineStream(r, io.BytesIO())
        r.close()
        with self.assertRaises(UnexpectedEndOfStream):
            s.read_line()

    def test_overlong_line_is_a_protocol_violation(self):
        s = LineStream(io.BytesIO(b'x' * 100 + b'\r\n'), io.BytesIO(), max_line_length=64)
        with self.assertRaises(ProtocolViolation):
            s.read_line()

    def test_line_at_the_limit_is_read(self):
        s = LineStream(io.BytesIO(b'x' * 62 + b'\r\n'), io.BytesIO(), max_line_length=64)
        self.assertEqual(s.read_line(), 'x' * 62)

    def test_unknown_encoding_rejected(self):
        with self.assertRaises(ValueError):
            LineStream(io.BytesIO(), io.BytesIO(), encoding='no-such-codec')
        self.assertEqual(check_encoding('latin-1'), 'latin-1')
        with self.assertRaises(ValueError):
            check_encoding('no-such-codec')


class TestQuoting(unittest.TestCase):
    def test_split_entry_strips_quotes(self):
        self.assertEqual(split_entry('wn "hello world"'), ('wn', 'hello world'))
        self.assertEqual(split_entry('foldoc "Free Online Dictionary of Computing"'),
                         ('foldoc', 'Free Online Dictionary of Computing'))

    def test_split_entry_unquoted_text(self):
        self.assertEqual(split_entry('exact Match exactly'), ('exact', 'Match exactly'))

    def test_split_entry_without_text(self):
        with self.assertRaises(ProtocolViolation):
            split_entry('wn')

    def test_unquote_escapes(self):
        self.assertEqual(unquote('"say \\"hi\\""'), 'say "hi"')
        self.assertEqual(unquote('"a\\\\b"'), 'a\\b')
        self.assertEqual(unquote('"'), '"')

    def test_quote_arg(self):
        self.assertEqual(quote_arg('hello'), 'hello')
        self.assertEqual(quote_arg('*'), '*')
        self.assertEqual(quote_arg('hello world'), '"hello world"')
        self.assertEqual(quote_arg('say "hi"'), '"say \\"hi\\""')

    def test_quote_arg_rejects_empty_and_line_breaks(self):
        for bad in ('', 'a\nb', 'a\rb'):
            with self.subTest(arg=bad):
                with self.assertRaises(ValueError):
                    quote_arg(bad)

    def test_split_command(self):
        self.assertEqual(split_command('DEFINE wn hello'), ['DEFINE', 'wn', 'hello'])
        self.assertEqual(split_command('MATCH * prefix "hello world"'), ['MATCH', '*', 'prefix', 'hello world'])
        self.assertEqual(split_command("DEFINE  wn   'it''s'"), ['DEFINE', 'wn', 'its'])
        self.assertEqual(split_command('DEFINE wn "say \\"hi\\""'), ['DEFINE', 'wn', 'say "hi"'])
        self.assertEqual(split_command('DEFINE wn ""'), ['DEFINE', 'wn', ''])

    def test_split_command_unterminated(self):
        with self.assertRaises(ValueError):
            split_command('DEFINE wn "hello')

    def test_quote_then_split_keeps_word(self):
        for word in ('hello', 'hello world', 'a "quoted" word', 'back\\slash'):
            with self.subTest(word=word):
                self.assertEqual(split_command('DEFINE wn ' + quote_arg(word))[2], word)

    def test_split_quoted_definition_header(self):
        self.assertEqual(split_quoted('151 "hello world" foldoc "The Free On-line Dictionary of Computing"'),
                         ['151', 'hello world', 'foldoc', 'The Free On-line Dictionary of Computing'])
        self.assertEqual(split_quoted('151 hello wn "WordNet (r) 3.0"'), ['151', 'hello', 'wn', 'WordNet (r) 3.0'])
        self.assertEqual(split_quoted("151 o'clock wn WordNet"), ['151', "o'clock", 'wn', 'WordNet'])
        self.assertEqual(split_quoted('151 "say \\"hi\\"" wn ""'), ['151', 'say "hi"', 'wn', ''])


class TestBanner(unittest.TestCase):
    def test_capabilities_and_message_id(self):
        caps, msg_id = parse_banner('dict.org dictd 1.12.1 <auth.mime> <123.456.789@dict.org>')
        self.assertEqual(caps, ['auth', 'mime'])
        self.assertEqual(msg_id, '<123.456.789@dict.org>')

    def test_plain_banner(self):
        self.assertEqual(parse_banner('ok'), ([], None))


if __name__ == '__main__':
    unittest.main()
