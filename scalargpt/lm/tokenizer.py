
#############################################################
## Tokenization
#############################################################

# only "normal" ASCII characters get a token, anything else (newlines, tabs, non-ASCII) is dropped
MIN_CHAR_CODE = 20
MAX_CHAR_CODE = 126

class CharacterTokenizer:
    def __init__(self) -> None:
        self.c2i: dict[str, int] = {}
        self.i2c: dict[int, str] = {}

    def train(self, samples: list[str]):
        # build the character set
        # KEY IDEA: naive tokenization, we do per character tokenization
        # token ids are handed out in the order the characters are first seen
        for c in "".join(samples):
            if not MIN_CHAR_CODE <= ord(c) <= MAX_CHAR_CODE:
                continue
            if c in self.c2i:
                continue
            self.c2i[c] = len(self.c2i)

        self.i2c = {i: c for c, i in self.c2i.items()}

    @property
    def bos_token(self) -> int:
        # KEY IDEA: a single special token right after the characters marks both the start and the end of a sample
        return len(self.c2i)

    @property
    def vocab_size(self) -> int:
        return len(self.c2i) + 1

    def encode(self, sample: str) -> list[int]:
        '''Tokens of sample wrapped with BOS on both sides, unknown characters raise KeyError'''
        tokens = [self.c2i[c] for c in sample]
        return [self.bos_token] + tokens + [self.bos_token]

    def decode(self, tokens: list[int]) -> str:
        chars = [self.i2c[i] for i in tokens if i != self.bos_token]
        return "".join(chars)
