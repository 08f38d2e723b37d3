"""
Generation loops over a loaded Transformer, Tokenizer and Sampler.

Completion feeds the prompt tokens one position at a time, then samples
until BOS (id 1) shows up or the step budget runs out. Chat alternates
user turns, rendered into the Llama 2 chat schema, with assistant turns
that run until EOS (id 2).
"""
import sys
import time
import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import config as model_config
from config import BOS_ID, EOS_ID
from llama2 import Transformer, load_model
from sampler import Sampler, make_sampler
from tokenizer import Tokenizer, load_tokenizer, safe_piece

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    text: str
    prompt_tokens: int          # number of prompt tokens including BOS
    n_tokens: int               # tokens accepted after the first prompt token
    tokens_per_second: float    # measured after the first accepted token

    def stats_string(self) -> str:
        return f"achieved tok/s: {self.tokens_per_second:.2f}"


def clamp_steps(steps, seq_len):
    if steps <= 0 or steps > seq_len:
        if steps > seq_len:
            logger.warning(f"steps {steps} exceeds seq_len {seq_len}, clamping")
        return seq_len
    return steps


def render_chat_prompt(user_prompt, system_prompt=None):
    if system_prompt:
        return model_config.CHAT_SYSTEM_TEMPLATE.format(system=system_prompt, user=user_prompt)
    return model_config.CHAT_USER_TEMPLATE.format(user=user_prompt)


def stream(transformer: Transformer, tokenizer: Tokenizer, sampler: Sampler,
           prompt: Optional[str], steps: int, state=None) -> Iterator[str]:
    """Yield the printable piece of every accepted token of a completion."""
    prompt_tokens = tokenizer.encode(prompt or "", bos=True, eos=False)
    return stream_tokens(transformer, tokenizer, sampler, prompt_tokens, steps, state)


def stream_tokens(transformer, tokenizer, sampler, prompt_tokens, steps, state=None):
    steps = clamp_steps(steps, transformer.config.seq_len)

    token = prompt_tokens[0]
    pos = 0
    while pos < steps:
        logits = transformer.forward(token, pos, state)

        # force the prompt while it lasts, then sample
        if pos < len(prompt_tokens) - 1:
            next_token = prompt_tokens[pos + 1]
        else:
            next_token = sampler.sample(logits)
        pos += 1

        # BOS delimits sequences
        if next_token == BOS_ID:
            break

        yield safe_piece(tokenizer.decode(token, next_token))
        token = next_token


def complete(transformer: Transformer, tokenizer: Tokenizer, sampler: Sampler,
             prompt: Optional[str], steps: int,
             on_piece: Optional[Callable[[str], None]] = None, state=None) -> GenerationResult:
    """Run a completion; ``state`` isolates the session from transformer.state."""
    prompt_tokens = tokenizer.encode(prompt or "", bos=True, eos=False)
    pieces = []
    start = 0.0
    for piece in stream_tokens(transformer, tokenizer, sampler, prompt_tokens, steps, state):
        pieces.append(piece)
        if on_piece is not None:
            on_piece(piece)
        # the first iteration can be slower, time from here
        if not start:
            start = time.time()

    tokens_per_second = 0.0
    if len(pieces) > 1:
        elapsed = time.time() - start
        if elapsed > 0:
            tokens_per_second = (len(pieces) - 1) / elapsed
    result = GenerationResult(
        text="".join(pieces) + "\n",
        prompt_tokens=len(prompt_tokens),
        n_tokens=len(pieces),
        tokens_per_second=tokens_per_second,
    )
    logger.info(result.stats_string())
    return result


def generate(transformer: Transformer, tokenizer: Tokenizer, sampler: Sampler,
             prompt: Optional[str], max_steps: int, state=None) -> str:
    return complete(transformer, tokenizer, sampler, prompt, max_steps, state=state).text


def chat_stream(transformer: Transformer, tokenizer: Tokenizer, sampler: Sampler,
                user_prompt: Optional[str], system_prompt: Optional[str], steps: int,
                read_prompt: Optional[Callable[[], Optional[str]]] = None,
                state=None) -> Iterator[str]:
    """
    Yield the assistant side of a conversation.

    ``read_prompt`` supplies every user turn after the first one; the
    conversation ends when it is missing or returns None.
    """
    steps = clamp_steps(steps, transformer.config.seq_len)

    user_turn = True
    prompt_tokens = []
    user_idx = 0
    next_token = 0
    token = 0
    pos = 0
    while pos < steps:
        if user_turn:
            if pos == 0 and user_prompt is not None:
                user = user_prompt
            else:
                user = read_prompt() if read_prompt is not None else None
            if user is None:
                break
            rendered = render_chat_prompt(user, system_prompt if pos == 0 else None)
            prompt_tokens = tokenizer.encode(rendered, bos=True, eos=False)
            user_idx = 0
            user_turn = False
            yield "Assistant: "

        # force the rendered prompt, then feed back what was sampled
        if user_idx < len(prompt_tokens):
            token = prompt_tokens[user_idx]
            user_idx += 1
        else:
            token = next_token
        # EOS ends the assistant turn
        if token == EOS_ID:
            user_turn = True

        logits = transformer.forward(token, pos, state)
        next_token = sampler.sample(logits)
        pos += 1

        if user_idx >= len(prompt_tokens) and next_token != EOS_ID:
            yield safe_piece(tokenizer.decode(token, next_token))
        if next_token == EOS_ID:
            yield "\n"


def chat(transformer: Transformer, tokenizer: Tokenizer, sampler: Sampler,
         user_prompt: Optional[str], system_prompt: Optional[str], max_steps: int,
         read_prompt: Optional[Callable[[], Optional[str]]] = None, state=None) -> str:
    return "".join(chat_stream(transformer, tokenizer, sampler, user_prompt, system_prompt,
                               max_steps, read_prompt=read_prompt, state=state))


def read_stdin(guide):
    try:
        return input(guide)
    except EOFError:
        return None


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Llama 2 inference in numpy")
    parser.add_argument('checkpoint', nargs='?', default=model_config.CHECKPOINT_PATH,
                        help="model checkpoint (.bin)")
    parser.add_argument('-z', '--tokenizer', type=str, default=model_config.TOKENIZER_PATH)
    parser.add_argument('--tokenizer-header', action='store_true',
                        help="vocabulary starts with an int32 max_token_length")
    parser.add_argument('-t', '--temperature', type=float)
    parser.add_argument('-p', '--top-p', type=float)
    parser.add_argument('-s', '--seed', type=int)
    parser.add_argument('-n', '--steps', type=int)
    parser.add_argument('-i', '--prompt', type=str)
    parser.add_argument('-y', '--system-prompt', type=str)
    parser.add_argument('-m', '--mode', choices=['generate', 'chat'], default='generate')
    parser.add_argument('--use-jit', action='store_true')
    args_cli = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    args = model_config.RunArgs()
    for name in ('temperature', 'top_p', 'seed', 'steps'):
        value = getattr(args_cli, name)
        if value is not None:
            setattr(args, name, value)
    args.use_jit = args.use_jit or args_cli.use_jit

    transformer = load_model(args_cli.checkpoint, use_jit=args.use_jit)
    args.validate(transformer.config.seq_len)
    tokenizer = load_tokenizer(args_cli.tokenizer, transformer.config.vocab_size,
                               header=args_cli.tokenizer_header)
    sampler = make_sampler(transformer.config.vocab_size, args.temperature, args.top_p, args.seed)

    def echo(piece):
        print(piece, end="")
        sys.stdout.flush()

    if args_cli.mode == 'generate':
        result = complete(transformer, tokenizer, sampler, args_cli.prompt, args.steps, on_piece=echo)
        print()
        if result.n_tokens > 1:
            print(f"\n{result.stats_string()}", file=sys.stderr)
    else:
        system_prompt = args_cli.system_prompt
        if system_prompt is None:
            system_prompt = read_stdin("Enter system prompt (optional): ")
        for piece in chat_stream(transformer, tokenizer, sampler, args_cli.prompt, system_prompt,
                                 args.steps, read_prompt=lambda: read_stdin("User: ")):
            echo(piece)
        print()


if __name__ == '__main__':
    main()
