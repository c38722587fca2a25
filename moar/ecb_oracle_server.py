from oraclebust import BlockOracle, serve_oracle
from base64 import b64decode
import logging
import sys

# https://cryptopals.com/sets/2/challenges/12
UNKNOWN_STRING = b64decode(
  'Um9sbGluJyBpbiBteSA1LjAKV2l0aCBteSByYWctdG9wIGRvd24gc28gbXkgaGFpciBjYW4gYmxvdwpUaGUgZ2ly'
  'bGllcyBvbiBzdGFuZGJ5IHdhdmluZyBqdXN0IHRvIHNheSBoaQpEaWQgeW91IHN0b3A/IE5vLCBJIGp1c3QgZHJvdmUgYnkK')

if __name__ == '__main__':
  logging.basicConfig(level=logging.DEBUG, format='%(asctime)s %(levelname)s %(message)s')

  port = int(sys.argv[1]) if len(sys.argv) > 1 else 8181
  httpd = serve_oracle(BlockOracle(suffix=UNKNOWN_STRING), host='', port=port)

  sa = httpd.socket.getsockname()
  print("Serving ECB oracle on", sa[0], "port", sa[1], "...")
  print("  decrypt_suffix(RemoteOracle('http://127.0.0.1:%d/'))" % sa[1])
  httpd.serve_forever()
