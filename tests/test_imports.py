import unittest

class TestImports(unittest.TestCase):
    def test_imports(self):
        """Test that all public modules can be imported"""
        from mcdcn import MCPClient, create_http_client, __version__
        from mcdcn.mcp import read_sse_response, HTTPTransport
        from mcdcn.config import load_token
        from mcdcn.render import render_human_output
        from mcdcn.cli import main

        self.assertIsNotNone(MCPClient)
        self.assertIsNotNone(create_http_client)
        self.assertIsNotNone(read_sse_response)
        self.assertIsNotNone(HTTPTransport)
        self.assertIsNotNone(load_token)
        self.assertIsNotNone(render_human_output)
        self.assertIsNotNone(main)
        self.assertEqual(__version__, "0.1.2")

if __name__ == "__main__":
    unittest.main()
