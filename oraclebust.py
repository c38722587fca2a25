# Copyright (C) 2016 Sebastien MACKE
#
# This program is free software; you can redistribute it and/or modify it under
# the terms of the GNU General Public License version 2, as published by the
# Free Software Foundation
#
# This program is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE. See the GNU General Public License for more
# details (http://www.gnu.org/licenses/gpl.txt).

__author__  = 'Sebastien Macke'
__email__   = 'lanjelot@gmail.com'
__version__ = '0.1'
__license__ = 'GPLv2'

from collections import Counter
from Crypto.Cipher import AES
from binascii import hexlify, unhexlify, Error as BinasciiError
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse, parse_qs
from threading import Thread
from queue import Queue
import itertools
import logging
import math
import random
import requests

logger = logging.getLogger('oraclebust')

MAX_XOR_KEYSIZE = 40
KEYSIZE_CANDIDATES = 3
BLOCKSIZE_PROBE_LIMIT = 512

# Errors {{{
class PaddingException(Exception):
  pass

class AttackError(Exception):
  '''Base class of every attack failure'''

class NoSolutionError(AttackError):
  '''The search completed without finding an acceptable candidate'''

class OracleInconsistency(AttackError):
  '''The oracle does not behave like the cipher the attack assumes'''

class BlockSizeError(OracleInconsistency):
  pass

class NotECBError(OracleInconsistency):
  pass

# }}}

# Utils {{{
def random_bytes(n, rng=random):
  return bytes(rng.randint(0, 255) for _ in range(n))

def xor(text, key):
  '''Cycle key over text. text must be at least as long as key.'''
  if not text or not key:
    raise ValueError('xor operands must be non-empty')

  if len(text) < len(key):
    raise ValueError('key longer than text (%d > %d)' % (len(key), len(text)))

  return bytes(c1 ^ c2 for c1, c2 in zip(text, itertools.cycle(key)))

def chunk(s, bs):
  return [s[i:i + bs] for i in range(0, len(s), bs)]

def pairwise(iterable):
    "s -> (s0,s1), (s1,s2), (s2, s3), ..."
    a, b = itertools.tee(iterable)
    next(b, None)
    return zip(a, b)

def pkcs7pad(s, bs):
  pad = bs - (len(s) % bs)
  return s + bytes([pad]) * pad

def pkcs7unpad(s):
  if not s:
    raise PaddingException('Bad padding')

  pad = s[-1]
  if pad == 0 or pad > len(s) or s[-pad:] != bytes([pad]) * pad:
    raise PaddingException('Bad padding')

  return s[:-pad]

def is_text(msg, encoding='utf-8'):
  try:
    msg.decode(encoding)
  except UnicodeDecodeError:
    return False
  return True

# }}}

# English {{{
ENGLISH_LETTER_FREQUENCIES = [
  0.08167, 0.01492, 0.02782, 0.04253, 0.1270, 0.02228, 0.02015, 0.06094, 0.06966, 0.00153,
  0.00772, 0.04025, 0.02406, 0.06749, 0.07507, 0.01929, 0.00095, 0.05987, 0.06327, 0.09056,
  0.02758, 0.00978, 0.02360, 0.00150, 0.01974, 0.00074,
]

WHITESPACE = b' \t\n\x0c\r'

def englishness(msg):
  '''How much msg looks like English, from 0.0 (not at all) to about 1.0.

The score is the Bhattacharyya coefficient between the English letter
distribution and the letters of msg, scaled down by the share of bytes that
are neither printable nor whitespace.
https://en.wikipedia.org/wiki/Bhattacharyya_distance
  '''
  letters = Counter()
  gibberish = 0

  for c in msg:
    if not (0x21 <= c <= 0x7e or c in WHITESPACE):
      gibberish += 1
    elif 0x41 <= c <= 0x5a or 0x61 <= c <= 0x7a:
      letters[c & 0xdf] += 1

  total = sum(letters.values()) + gibberish
  if total == 0:
    return 0.

  score = sum(math.sqrt(freq * letters[0x41 + i] / total)
              for i, freq in enumerate(ENGLISH_LETTER_FREQUENCIES))

  return score * (1 - gibberish / total)

# }}}

# XOR {{{
def crack_single_char_xor(ciphertext, encoding='utf-8'):
  '''https://cryptopals.com/sets/1/challenges/3
Returns (key, plaintext, score), the lowest key wins ties.'''
  best = None

  for char in range(256):
    xored = xor(ciphertext, bytes([char]))
    if not is_text(xored, encoding):
      continue

    score = englishness(xored)
    if best is None or score > best[2]:
      best = char, xored, score

  if best is None:
    raise NoSolutionError('no key decodes %d bytes to %s' % (len(ciphertext), encoding))

  return best

def detect_single_char_xor(ciphertexts, encoding='utf-8'):
  '''https://cryptopals.com/sets/1/challenges/4'''
  best = None

  for i, ciphertext in enumerate(ciphertexts):
    try:
      key, plaintext, score = crack_single_char_xor(ciphertext, encoding)
    except NoSolutionError:
      continue

    if best is None or score > best[3]:
      best = i, key, plaintext, score

  if best is None:
    raise NoSolutionError('none of the ciphertexts decodes to %s' % encoding)

  logger.info('line %d xored with %#04x: %r', best[0], best[1], best[2])
  return best

def hamming(str1, str2):
  if len(str1) != len(str2):
    raise ValueError('hamming distance needs equal lengths (%d != %d)' % (len(str1), len(str2)))

  return sum(bin(c1 ^ c2).count('1') for c1, c2 in zip(str1, str2))

def find_xor_keysize(ciphertext, min_size=2, max_size=MAX_XOR_KEYSIZE):
  '''Candidate keysizes sorted by mean normalized distance between consecutive blocks'''
  distances = {}

  for keysize in range(min_size, max_size + 1):
    blocks = [b for b in chunk(ciphertext, keysize) if len(b) == keysize]
    if len(blocks) < 2:
      continue

    dists = [hamming(b1, b2) / keysize for b1, b2 in pairwise(blocks)]
    distances[keysize] = sum(dists) / len(dists)

  return sorted(distances.items(), key=lambda x: x[1])

def transpose(text, size):
  '''[[1,2,3], [1,2,3], [1,2,3]] => [[1,1,1], [2,2,2], [3,3,3]]'''
  return [text[i::size] for i in range(size)]

def find_xor_key(ciphertext, keysize, encoding='utf-8'):
  return bytes(crack_single_char_xor(chars, encoding)[0] for chars in transpose(ciphertext, keysize))

def smallest_period(key):
  '''b'ICEICE' => b'ICE' '''
  for n in range(1, len(key)):
    if len(key) % n == 0 and key[:n] * (len(key) // n) == key:
      return key[:n]

  return key

def break_repeating_key_xor(ciphertext, candidates=KEYSIZE_CANDIDATES, encoding='utf-8'):
  '''https://cryptopals.com/sets/1/challenges/6
Returns (key, plaintext, score) of the best scoring key among the most likely keysizes.'''
  if not ciphertext:
    raise ValueError('empty ciphertext')

  best = None

  for keysize, distance in find_xor_keysize(ciphertext)[:candidates]:
    try:
      key = smallest_period(find_xor_key(ciphertext, keysize, encoding))
    except NoSolutionError:
      logger.debug('keysize %d: some column has no valid key', keysize)
      continue

    plaintext = xor(ciphertext, key)
    if not is_text(plaintext, encoding):
      logger.debug('keysize %d: key %r does not decode', keysize, key)
      continue

    score = englishness(plaintext)
    logger.debug('keysize %d (distance %.4f): key %r, score %.4f', keysize, distance, key, score)

    if best is None or score > best[2]:
      best = key, plaintext, score

  if best is None:
    raise NoSolutionError('no keysize candidate gives %s text' % encoding)

  logger.info('xor key: %r', best[0])
  return best

# }}}

# Ciphers {{{
def encrypt_ecb(msg, key):
  return AES.new(key, AES.MODE_ECB).encrypt(msg)

def decrypt_ecb(msg, key):
  return AES.new(key, AES.MODE_ECB).decrypt(msg)

def encrypt_cbc(msg, key, iv):
  if len(msg) % AES.block_size:
    raise ValueError('message is not block aligned, pad it first')

  ct = iv
  result = b''
  for pt in chunk(msg, AES.block_size):
    ct = encrypt_ecb(xor(ct, pt), key)
    result += ct

  return iv + result

def decrypt_cbc(msg, key, iv=None):
  if iv:
    msg = iv + msg
  result = b''
  for prev_ct, ct in pairwise(chunk(msg, AES.block_size)):
    result += xor(prev_ct, decrypt_ecb(ct, key))

  return result

class BlockOracle(object):
  '''Encrypts pkcs7pad(prefix + data + suffix) with AES in ECB or CBC mode.

The key, iv, prefix and suffix are fixed at construction and calls never
modify the instance, so an oracle may be queried from several threads.
  '''

  block_size = AES.block_size

  def __init__(self, key=None, mode='ECB', prefix=b'', suffix=b'', iv=None, rng=random):
    if mode not in ('ECB', 'CBC'):
      raise ValueError('unsupported mode %r' % mode)

    self.key = key if key is not None else random_bytes(16, rng)
    self.iv = iv if iv is not None else random_bytes(self.block_size, rng)
    self.mode = mode
    self.prefix = prefix
    self.suffix = suffix

  def __call__(self, data):
    return self.encrypt(data)

  def encrypt(self, data):
    pt = pkcs7pad(self.prefix + data + self.suffix, self.block_size)

    if self.mode == 'ECB':
      return encrypt_ecb(pt, self.key)
    else:
      return encrypt_cbc(pt, self.key, self.iv)[self.block_size:]

  def decrypt(self, ciphertext):
    if self.mode == 'ECB':
      pt = decrypt_ecb(ciphertext, self.key)
    else:
      pt = decrypt_cbc(ciphertext, self.key, self.iv)

    return pkcs7unpad(pt)

def random_oracle(rng=random):
  '''https://cryptopals.com/sets/2/challenges/11'''
  key = random_bytes(16, rng)
  mode = rng.choice(['ECB', 'CBC'])
  prefix = random_bytes(rng.randint(5, 10), rng)
  suffix = random_bytes(rng.randint(5, 10), rng)

  return BlockOracle(key, mode, prefix=prefix, suffix=suffix, rng=rng)

# }}}

# ECB {{{
def find_blocksize(encryption_oracle, limit=BLOCKSIZE_PROBE_LIMIT, filler=b'A'):
  sizes = [len(encryption_oracle(filler))]

  for i in range(2, limit + 1):
    sizes.append(len(encryption_oracle(filler * i)))

    if sizes[-1] != sizes[-2]:
      break

  else:
    raise BlockSizeError('output length did not change within %d queries' % limit)

  bs = sizes[-1] - sizes[-2]
  if bs <= 0 or any(s % bs for s in sizes):
    raise BlockSizeError('output lengths %r are not multiples of %d' % (sorted(set(sizes)), bs))

  logger.info('[+] blocksize: %d', bs)
  return bs

def detect_ecb(ciphertext, bs=AES.block_size):
  '''counts identical blocks'''
  stats = Counter(chunk(ciphertext, bs))

  return [(b, c) for b, c in stats.items() if c > 1]

def is_ecb(ciphertext, bs=AES.block_size):
  return len(detect_ecb(ciphertext, bs)) > 0

def guess_mode(encryption_oracle, bs=None):
  if bs is None:
    bs = find_blocksize(encryption_oracle)

  if is_ecb(encryption_oracle(b'\x00' * bs * 3), bs):
    return 'ECB'
  else:
    return 'CBC'

def check_ecb(encryption_oracle, bs):
  if not is_ecb(encryption_oracle(b'\x00' * bs * 3), bs):
    raise NotECBError('no repeated block in the output of %d null bytes' % (bs * 3))

def sizeof_suffix(encryption_oracle, bs, prefix_size=0, filler=b'A'):
  '''Find how many filler bytes push the output to one more block'''
  base = len(encryption_oracle(b''))

  for n in range(1, bs + 1):
    if len(encryption_oracle(filler * n)) > base:
      suffix_size = base - prefix_size - n
      if suffix_size < 0:
        raise OracleInconsistency('prefix of %d bytes does not fit in %d bytes of output' % (prefix_size, base))
      return suffix_size

  raise BlockSizeError('output did not grow after %d bytes' % bs)

def sizeof_pfxsfx(encryption_oracle, bs):

  # the pair must hold filler, so compare with the same query made of another filler
  def indexof_pair(blocks, others):
    for i in range(1, len(blocks)):
      if blocks[i] == blocks[i - 1] and blocks[i] != others[i]:
        return i - 1
    return -1

  # the prefix may end, or the suffix start, with the filler
  fillers = [b'A', b'B', b'C']
  candidates = []
  for j, c in enumerate(fillers):
    other = fillers[(j + 1) % len(fillers)]
    for n in range(bs, bs * 3):
      blocks = chunk(encryption_oracle(c * n), bs)
      others = chunk(encryption_oracle(other * n), bs)
      i = indexof_pair(blocks, others)
      if i >= 0:
        candidates.append((n, c, i))
        break

  if not candidates:
    raise NotECBError('no pair of identical blocks after %d bytes' % (bs * 3))

  n, c, i = max(candidates)

  prefix_size = bs * (i + 2) - n
  if prefix_size < 0:
    raise OracleInconsistency('filler pair at block %d after %d bytes' % (i, n))

  suffix_size = sizeof_suffix(encryption_oracle, bs, prefix_size, c)

  logger.info('[+] prefix_size: %d, suffix_size: %d, char: %r', prefix_size, suffix_size, c)
  return prefix_size, suffix_size, c

def guess_byte(encryption_oracle, data, index, hint, charset, bs, threads=1):
  '''Return the first c in charset whose block index in oracle(data + c) equals hint'''

  def block_of(c):
    return chunk(encryption_oracle(data + bytes([c])), bs)[index]

  if not charset:
    return None

  if threads <= 1:
    for c in charset:
      if block_of(c) == hint:
        return c
    return None

  resultq, errorq = Queue(), Queue()

  def bust(start, stop):
    try:
      for pos in range(start, stop):
        if block_of(charset[pos]) == hint:
          resultq.put(pos)
          return
    except Exception as e:
      errorq.put(e)

  step = -(-len(charset) // threads)
  workers = []
  for start in range(0, len(charset), step):
    t = Thread(target=bust, args=(start, min(start + step, len(charset))))
    t.daemon = True
    t.start()
    workers.append(t)

  for t in workers:
    t.join()

  if not errorq.empty():
    raise errorq.get()

  found = []
  while not resultq.empty():
    found.append(resultq.get())

  if not found:
    return None

  return charset[min(found)]

def decrypt_suffix(encryption_oracle, bs=None, expected_bs=AES.block_size, prefix_size=None,
                   suffix_size=None, filler=None, charset=None, threads=1):
  '''https://cryptopals.com/sets/2/challenges/12
https://cryptopals.com/sets/2/challenges/14'''
  if bs is None:
    bs = find_blocksize(encryption_oracle)

  if bs != expected_bs:
    raise BlockSizeError('blocksize is %d, expected %d' % (bs, expected_bs))

  check_ecb(encryption_oracle, bs)

  if prefix_size is None:
    prefix_size, found_size, found_filler = sizeof_pfxsfx(encryption_oracle, bs)
    if suffix_size is None:
      suffix_size = found_size
    if filler is None:
      filler = found_filler

  if filler is None:
    filler = b'A'

  if suffix_size is None:
    suffix_size = sizeof_suffix(encryption_oracle, bs, prefix_size, filler)

  if charset is None:
    charset = range(256)
  charset = bytes(charset)

  align = -prefix_size % bs
  skip = (prefix_size + align) // bs
  decrypted = b''

  for i in range(suffix_size):
    data = filler * (align + bs - 1 - (i % bs))
    index = skip + i // bs
    hint = chunk(encryption_oracle(data), bs)[index]

    c = guess_byte(encryption_oracle, data + decrypted, index, hint, charset, bs, threads)
    if c is None:
      raise OracleInconsistency('no candidate matches byte %d of the suffix' % i)

    decrypted += bytes([c])
    logger.debug('%r', decrypted)

  logger.info('[+] decrypted %d bytes', len(decrypted))
  return decrypted

# }}}

# Cut-and-paste {{{
def kv_parse(s):
  '''b'foo=bar&baz=qux' => {b'foo': b'bar', b'baz': b'qux'}'''
  parsed = {}

  for kv in s.split(b'&'):
    if not kv:
      continue
    k, _, v = kv.partition(b'=')
    parsed[k] = v

  return parsed

def kv_encode(pairs):
  if isinstance(pairs, dict):
    pairs = pairs.items()

  return b'&'.join(k + b'=' + v for k, v in pairs)

class ProfileOracle(object):
  '''https://cryptopals.com/sets/2/challenges/13'''

  def __init__(self, key=None, uid=10, rng=random):
    self.key = key if key is not None else random_bytes(16, rng)
    self.uid = uid

  def profile_for(self, email):
    email = email.replace(b'&', b'').replace(b'=', b'')
    return kv_encode([(b'email', email), (b'uid', b'%d' % self.uid), (b'role', b'user')])

  def __call__(self, email):
    return self.encrypt(email)

  def encrypt(self, email):
    return encrypt_ecb(pkcs7pad(self.profile_for(email), AES.block_size), self.key)

  def decrypt(self, ciphertext):
    return kv_parse(pkcs7unpad(decrypt_ecb(ciphertext, self.key)))

def cut_and_paste(encryption_oracle, value=b'admin', tail=b'user', bs=None, filler=b'A'):
  '''Replace tail, the last field value of the encrypted record, by value.

  blocks 0..k: email=AAAAAAAAAAAAA&uid=10&role= | user...     (tail in its own block)
  block j:     email=AAAAAAAAAA | admin\\x0b\\x0b...   (value isolated and padded)
  '''
  if bs is None:
    bs = find_blocksize(encryption_oracle)

  check_ecb(encryption_oracle, bs)

  prefix_size, suffix_size, _ = sizeof_pfxsfx(encryption_oracle, bs)

  align = -prefix_size % bs
  index = (prefix_size + align) // bs
  isolated = chunk(encryption_oracle(filler * align + pkcs7pad(value, bs)), bs)[index]

  n = -(prefix_size + suffix_size - len(tail)) % bs
  cut = prefix_size + n + suffix_size - len(tail)
  base = encryption_oracle(filler * n)[:cut]

  logger.info('[+] pasting block %d after %d bytes', index, cut)
  return base + isolated

def forge_admin_profile(profile_oracle):
  return cut_and_paste(profile_oracle, b'admin', b'user')

# }}}

# Remote {{{
class RemoteOracle(object):
  '''Oracle exposed over HTTP: GET url?data=<hex> answers the hex ciphertext'''

  def __init__(self, url, param='data', session=None, timeout=10):
    self.url = url
    self.param = param
    self.session = session or requests.Session()
    self.timeout = timeout

  def __call__(self, data):
    r = self.session.get(self.url, params={self.param: hexlify(data).decode()}, timeout=self.timeout)

    if r.status_code != 200:
      raise OracleInconsistency('%s answered %d' % (self.url, r.status_code))

    try:
      return unhexlify(r.text.strip())
    except BinasciiError as e:
      raise OracleInconsistency('%s answered a body that is not hex: %s' % (self.url, e))

class OracleRequestHandler(BaseHTTPRequestHandler):
  oracle = None
  param = 'data'

  def do_GET(self):
    query = parse_qs(urlparse(self.path).query, keep_blank_values=True)

    try:
      data = unhexlify(query[self.param][0])
    except (KeyError, BinasciiError):
      self.send_response(400)
      self.end_headers()
      return

    body = hexlify(self.oracle(data))

    self.send_response(200)
    self.send_header('Content-Type', 'text/plain')
    self.send_header('Content-Length', str(len(body)))
    self.end_headers()
    self.wfile.write(body)

  def log_message(self, fmt, *args):
    logger.debug(fmt, *args)

def serve_oracle(oracle, host='127.0.0.1', port=8181, param='data'):
  handler = type('OracleHandler', (OracleRequestHandler,), {'oracle': staticmethod(oracle), 'param': param})
  return HTTPServer((host, port), handler)

# }}}

# vim: ts=2 sw=2 sts=2 et fdm=marker bg=dark
